"""
MedPlan — medication dose planning and reminder delivery.
"""
__version__ = "1.0.0"
