"""
Scan agent: polls a remote work queue and drives scan jobs through an external host
"""

__version__ = "0.1.0"
