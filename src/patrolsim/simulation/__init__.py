"""Patrol simulation: scheduler, waypoints, detection, patrol loops, manager.

Submodules are imported directly (``patrolsim.simulation.patrol``) so that the
host layer can depend on the clock without pulling in the whole engine.
"""
