"""Courier-Engine: webhook dispatch and delivery for lifecycle events."""

from courier_engine.conditions.evaluator import evaluate
from courier_engine.deliveries.signing import sign_payload, signature_header, verify_signature
from courier_engine.dispatch.schemas import LifecycleEvent

__all__ = [
    "LifecycleEvent",
    "evaluate",
    "sign_payload",
    "signature_header",
    "verify_signature",
]
__version__ = "0.1.0"
