# Fraud Scoring
from .fraud_scorer import FraudScoringEngine, default_signals
from .review import ReviewFlagger
from .signals import BaseSignal, RapidCycleSignal, SignalResult

__all__ = [
    "FraudScoringEngine",
    "default_signals",
    "ReviewFlagger",
    "BaseSignal",
    "RapidCycleSignal",
    "SignalResult",
]
