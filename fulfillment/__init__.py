"""
Data-subject request fulfillment engine.

Fans a privacy request out to every registered location holding personal
data, tracks each location's task to completion and rolls results up per
request.
"""

__version__ = "0.1.0"
