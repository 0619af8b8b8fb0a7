"""
Public API Service package for the Feed Reader Access Layer.
"""
