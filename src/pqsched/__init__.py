"""
pqsched: persistent-queue task scheduler.

Polls a SQLite task table, keeps the number of running tasks under a cap and
runs each claimed task in its own worker process.
"""

__version__ = "0.1.0"
