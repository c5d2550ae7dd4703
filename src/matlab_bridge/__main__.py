"""matlab-bridge entry point.

Supports: python -m matlab_bridge
"""

from .app import main

if __name__ == "__main__":
    main()
