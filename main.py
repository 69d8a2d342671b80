import sys

from core.runtime.server import run


# Run in development (sandboxed under ./.dev, debug on, no redirect):
# python main.py -port 8080 -https-port 8443


if __name__ == "__main__":
    sys.exit(run())
