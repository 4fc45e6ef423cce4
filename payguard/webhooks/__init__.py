# Signed notification handling
from .processor import WebhookProcessor
from .verifier import KeySetCache, WebhookVerifier

__all__ = ["KeySetCache", "WebhookProcessor", "WebhookVerifier"]
