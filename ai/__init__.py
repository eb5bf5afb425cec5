"""
AI Proposal Module

Asks an OpenAI-compatible chat model for decision batches and parses them
into DecisionIntents. The model only proposes; the decision validator,
execution dispatcher and profit/loss controller remain the hard authority.
"""
