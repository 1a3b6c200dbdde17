"""Transcoding module for Coconut jobs.

Submits sources to the Coconut API, tracks job and output state from
Coconut notifications and stores pushed output files in volumes.
"""

from coconut_jobs.modules.transcoding.router import router

__all__ = ["router"]
