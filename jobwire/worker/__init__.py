"""
Worker module.
Contains the worker loop, job invocation and handler registries.
"""
