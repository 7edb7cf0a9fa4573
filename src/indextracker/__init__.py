"""Search-engine indexing tracker: discovery, submission, verification and reporting."""
__version__ = "0.3.0"
