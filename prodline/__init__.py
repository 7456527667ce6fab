"""
Production Line Simulator

A single-lane production queue: items are claimed one at a time, driven through
an ordered sequence of timed stages, and announced to a callback URL on completion.
"""

__version__ = "1.0.0"
