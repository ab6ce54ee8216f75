"""
Analytics module for the ECA server: read-only reports over the graph.

This module provides:
- RFM customer segmentation
- Product and location performance
- Sales summaries

Invariants:
    - Reports never write to the store
    - Results may lag in-flight writes (eventually consistent)
"""

from .performance import PerformanceAnalyzer
from .rfm import (
    CustomerRfm,
    RfmAnalyzer,
    assign_segment,
    quartile_boundaries,
    score_value,
    segment_summary,
)

__all__ = [
    "RfmAnalyzer",
    "CustomerRfm",
    "assign_segment",
    "quartile_boundaries",
    "score_value",
    "segment_summary",
    "PerformanceAnalyzer",
]
