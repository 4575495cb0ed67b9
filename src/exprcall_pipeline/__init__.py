"""exprcall-pipeline: propagation and reconciliation of gene expression calls.

Combines raw per-experiment expression/no-expression calls into aggregate
calls along the anatomical and developmental-stage ontologies, and checks
the result for conflicting evidence.
"""

__version__ = "0.1.0"
