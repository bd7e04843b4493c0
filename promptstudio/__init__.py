"""
promptstudio - prompt chains, artists and inspirations with
quota-enforced image storage.
"""

__version__ = "0.1.0"
