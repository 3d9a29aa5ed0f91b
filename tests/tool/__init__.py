"""Tests for the gitops-bootstrap command line tool."""
