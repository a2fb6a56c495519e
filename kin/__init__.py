"""kin - family task completion and verification core."""
