"""nanoflow: dataflow engine for long-read sequencing runs."""

__version__ = "1.0.0"
