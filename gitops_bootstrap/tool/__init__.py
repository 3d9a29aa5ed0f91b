"""Command line tool for bootstrapping a GitOps repository."""
