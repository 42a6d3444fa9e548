# ============================================
# FILE: durasaga/cli/__init__.py
# ============================================
"""
CLI module for Durasaga - contains command-line interface components.
"""

from durasaga.cli.main import main

__all__ = ["main"]
