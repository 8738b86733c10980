"""
License harvester: queue-driven collection of public professional
licensing records.
"""

__version__ = "1.0.0"
