"""
ISO New England assistant: streaming retrieval-augmented chat agent.
"""

__version__ = "1.0.0"
