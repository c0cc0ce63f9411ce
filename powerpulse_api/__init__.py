"""
Top-level package for the PowerPulse delivery API.

This file makes ``powerpulse_api`` a Python package so that modules
within ``app`` can be imported using fully qualified names like
``powerpulse_api.app.main``.

The package provides no public exports; all functionality lives in
submodules under ``app``.
"""

__all__ = []
