"""
jobwire

Background-job reservation over a relational job store and a push-based
message broker. The broker wakes workers up; the job store decides whether
a job may run.
"""

__version__ = "1.0.0"
