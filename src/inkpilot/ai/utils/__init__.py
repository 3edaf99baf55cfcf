"""Helpers shared by the AI client and orchestration layers."""
