"""
Rescue Ops - Authorization & Case-Lifecycle Engine

Decides whether an actor may perform an operational action and governs
how a rescue case moves through its lifecycle.
"""

__version__ = "1.0.0"
