"""Tests for gitops-bootstrap."""
