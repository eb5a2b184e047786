"""
Qt integration package for the Cosmetica session client.

This package bridges session UI events onto the Qt thread and runs the
session's event loop in a worker thread.
"""

from .bridge import QtUserInterface, SessionSignals, SessionWorker

__all__ = ['QtUserInterface', 'SessionSignals', 'SessionWorker']
