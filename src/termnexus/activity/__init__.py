"""Activity inference: analyzers, state tracking and hook signals."""
