"""TherapyFlow practice management backend."""

APP_NAME = "TherapyFlow"

__all__ = ["APP_NAME"]
