from app.pipeline.countdown import Countdown, Urgency, evaluate, evaluate_switch

__all__ = [
    "Countdown",
    "Urgency",
    "evaluate",
    "evaluate_switch",
]
