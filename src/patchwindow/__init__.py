"""Patch window synchronization.

Reconciles upcoming patch tasks from the task scheduler with unmanage
windows on the monitoring platform, so alerting is suppressed for each
host while it is being patched.
"""

__version__ = "1.0.0"
