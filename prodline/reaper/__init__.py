"""
Reaper module.
Contains the lock reaper that turns items of dead engines into orphans.
"""

from prodline.reaper.main import LockReaper, run

__all__ = ["LockReaper", "run"]
