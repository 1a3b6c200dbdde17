"""Storage module.

Resolves where Coconut uploads output files: named storage settings,
storage volumes and the volume adapters that build upload and public URLs.
"""
