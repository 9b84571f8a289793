"""This module specifies the current pg_keeper version.

:var __version__: the current pg_keeper version.
"""
__version__ = '1.0.0'
