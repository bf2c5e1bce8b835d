"""State/store layer.

This package is the single source of truth for what the dashboard displays:
the mirrored records, the local edit sessions shielding them, and the merge
policy that reconciles remote change events against both.
"""
