"""
Output modules for NetLens
"""

from .console import ConsoleOutput

__all__ = ['ConsoleOutput']
