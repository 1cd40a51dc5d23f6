"""Command line tool for gitops-sync."""
