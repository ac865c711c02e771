"""
Estimate Auditor — evidence-first checking of rental move-in cost estimates.

Architecture: Extract (flyer ∥ estimate) → Normalize → Conflicts → Verify → Merge → Diagnose
Philosophy:  Trust the AI to read. Trust only code to judge. No evidence, no number.
"""

__version__ = "1.0.0"
