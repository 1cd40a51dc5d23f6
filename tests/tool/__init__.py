"""Tests for the gitops-sync command line tool."""
