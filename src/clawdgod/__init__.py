"""
ClawdGod: agent orchestrator.

Provisions, supervises, and tears down one runtime instance per user
agent on a host, each as its own systemd unit, and reports every state
change back to the platform backend.
"""

import os

__version__ = "0.1.0"
__author__ = "ClawdGod"

ORCHESTRATOR_HOME = os.environ.get("CLAWDGOD_HOME", "~/.clawdgod")
