"""
Model Rollout Controller API Module

FastAPI-based REST API for starting, inspecting and aborting rollouts.
"""

from model_rollout.api.main import app

__all__ = ["app"]
