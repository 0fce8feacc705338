"""sitefleet: time-driven reconciliation and dispatch for a fleet of sites.

A trigger scheduler fires named periodic triggers under single-flight,
reconcilers turn store state into work units, and a shared bounded worker
pool executes them.
"""

__version__ = "0.1.0"
