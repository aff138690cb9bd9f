"""
Vibration Processor
Consumes raw vibration batches, extracts features, scores data quality and
republishes enriched records with retry and dead-lettering
"""

__version__ = "1.0.0"
