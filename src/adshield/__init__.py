"""
adshield: ad and tracker blocking engine for a Playwright-driven browser shell.
"""

__version__ = "0.1.0"
