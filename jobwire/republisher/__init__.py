"""
Republisher module.
Contains the sweep that re-announces every dispatchable job on the broker.
"""

from jobwire.republisher.main import Republisher, run

__all__ = ["Republisher", "run"]
