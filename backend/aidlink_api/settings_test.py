import os

os.environ.setdefault("DJANGO_DEBUG", "1")
os.environ.setdefault("DJANGO_SECRET_KEY", "test-only-key")
os.environ.setdefault("DJANGO_USE_SQLITE", "1")
os.environ.setdefault("DJANGO_ALLOW_SQLITE", "1")

from aidlink_api.settings import *  # noqa: E402,F401,F403
