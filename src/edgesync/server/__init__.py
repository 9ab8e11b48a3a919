"""Central node: registry, sync API and maintenance jobs."""
