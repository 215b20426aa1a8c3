"""
Adapters for the external services behind the Peanut frame.
"""
