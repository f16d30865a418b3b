"""
Production Kernel - batch lifecycle for manufacturing work orders

Segments a work order's production into numbered batches and keeps, per
batch:
- Independent material, first-piece and final QC gates
- Dispatch eligibility derived from those gates
- Packed and dispatched quantities bounded by QC approval
- Work order totals recomputed from source rows
- An append-only, hash-chained audit trail
"""

__version__ = "0.1.0"
