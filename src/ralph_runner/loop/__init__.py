"""Iteration loop: stream decoding, task selection and the orchestrator."""
