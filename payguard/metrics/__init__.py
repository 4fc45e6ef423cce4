# Metrics Module
from .prometheus import metrics

__all__ = ["metrics"]
