"""
NetLens - Network Diagnostics Probe Engine

Entry point for running as a module:
    python -m netlens <command> <target>
"""

from .cli import main

if __name__ == '__main__':
    main()
