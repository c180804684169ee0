"""duomode command-line interface."""
