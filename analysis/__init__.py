"""
Correlation Engine Module

Pairwise price correlations and the views built on them:
- Log returns and Pearson estimator
- Batch recompute per ticker against venue peers
- Cached reads with background recompute
- Correlation matrix, risk clusters and diversifiers
"""

__version__ = "0.1.0"
