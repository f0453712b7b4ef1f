"""
Model Rollout Controller - Command Line Interface.

Provides a rich CLI for validating plans, starting and following rollouts,
inspecting and aborting runs, and simulating plans offline.

Usage:
    model-rollout validate plan.yaml
    model-rollout start plan.yaml --config settings.yaml --follow
    model-rollout simulate plan.yaml --fail-at-step 1
"""

from model_rollout.cli.main import app, main

__all__ = ["app", "main"]
