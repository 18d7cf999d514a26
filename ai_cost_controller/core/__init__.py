"""
Core modules for AI Cost Controller.

This package contains streaming statistics, variance attribution,
counterfactual replay, decision compilation and the request hot path.
"""
