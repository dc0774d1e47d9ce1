"""
Preview Sandbox - Provision, monitor and retire live previews of generated projects.
"""

__version__ = "0.1.0"
