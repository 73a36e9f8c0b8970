"""
MeterScan - Instrument Display Reading Extraction

Extracts numeric readings from instrument displays captured on video by
running several OCR backends over user-marked regions and fusing their
results into one trustworthy value per region per frame.
"""

__version__ = "0.1.0"
