"""Coconut transcoding jobs backend.

Submits video sources to the Coconut.co transcoding service, tracks the
resulting jobs through their webhook notifications, and stores the output
files in configurable storage volumes.

Modules:
    - core: Configuration, database, logging, events, validators, Celery setup
    - modules.storage: Volumes, storage settings and volume adapters
    - modules.transcoding: Coconut client, jobs, outputs and HTTP endpoints
"""

__version__ = "0.1.0"
