"""
AutoClock Attendance Agent
==========================
Clocks in against the attendance API, waits out the minimum work duration,
clocks out. Survives restarts and sleep/wake, refreshes expired tokens.

Usage:
    python agent.py
"""

from autoclock.runner import run_with_auto_restart


if __name__ == "__main__":
    run_with_auto_restart()
