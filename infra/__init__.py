"""
Ephemera - Infrastructure Package

Ambient concerns shared by the control plane: structured logging,
layered YAML configuration, retry with backoff and call deadlines, and
status notification. Nothing here knows about environment lifecycle.
"""
