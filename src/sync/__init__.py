"""
Scheduled grade synchronization.

- orchestrator: per-tick account/student loop and schedule slot selection
- reconciler: current-grade upsert with change-gated history
- handler: configuration and the Lambda entry point
"""
