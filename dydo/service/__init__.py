"""
Guard services: state, identity, policy, agent lifecycle and audit.
"""
