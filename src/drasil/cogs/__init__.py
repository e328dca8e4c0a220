from .detection import DetectionCog
from .verification import VerificationCog

__all__ = ["DetectionCog", "VerificationCog"]
