"""Oversight layer: observations, escalations, auto-resolution, improvement
analysis and convergence tracking.
"""
