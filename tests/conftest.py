import os
import sys


# The HTTP entrypoints live under apps/ next to the library; put the repository
# root on sys.path so `apps.server.app` imports without an editable install.
_REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if _REPO_ROOT not in sys.path:
    sys.path.insert(0, _REPO_ROOT)
