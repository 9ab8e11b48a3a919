"""EdgeSync - Record synchronization between edge nodes and a central node."""

__version__ = "0.1.0"
