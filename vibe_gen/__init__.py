"""
Vibe-Gen: staged, user-gated generation of UI prototype variants
from a captured screen and a natural-language request.
"""

__version__ = "0.1.0"
