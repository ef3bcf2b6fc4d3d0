"""
Generators for the children of each owner kind
"""

# Local
from .defaults import ResourceDefaults
