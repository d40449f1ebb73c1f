"""Order flow service for a print shop.

Routes order items through sales, design, prepress, production, outsource
and dispatch, and keeps every department's view of the work in sync.
"""

__version__ = "1.0.0"
