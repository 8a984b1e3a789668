"""Auto-rigging, skinning and keyframe animation for arbitrary meshes."""

__version__ = "0.3.0"
