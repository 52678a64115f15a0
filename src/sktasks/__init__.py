"""
SKTasks -- sovereign task records, everywhere.

Your tasks, encrypted before they leave the device, replicated
across untrusted storage and shared with the agents you trust.

A smilinTux Open Source Project.
"""

import os

__version__ = "0.1.0"
__author__ = "smilinTux"

TASKS_HOME = os.environ.get("SKTASKS_HOME", "~/.sktasks")
