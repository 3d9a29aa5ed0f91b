"""
Library for bootstrapping a GitOps continuous delivery configuration.

The main entry point is `bootstrap.bootstrap` which builds a `tree.ResourceTree`
of kubernetes manifests that can be written out with `serializer.write_tree`.
"""

__all__ = [
    "bootstrap",
    "cluster",
    "command",
    "config",
    "exceptions",
    "image_repo",
    "naming",
    "resources",
    "secrets",
    "serializer",
    "tekton",
    "tree",
    # Note this is exposed for CLI documentation, not to be used as a library
    "tool",
]
