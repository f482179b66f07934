"""Checkpointed workflow execution: step results, the executor and entry handlers."""
