"""Connection layer: one resilient realtime subscription per topic."""
