"""
Pytest bootstrap.
Settings are read at import time, so the testing environment has to be
in place before any application module is imported.
"""
import os

# Set testing environment before importing app
os.environ["TESTING"] = "True"
os.environ["DEBUG"] = "False"
os.environ.setdefault("LOG_LEVEL", "WARNING")
