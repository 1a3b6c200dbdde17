"""Application modules.

- storage: Volumes, storage settings and upload/public URL adapters
- transcoding: Coconut jobs, outputs, notifications and upload proxy
"""
