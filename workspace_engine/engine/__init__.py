"""
Artifact lifecycle engine: process runner, repository client, dependency
resolver, lifecycle controllers and the self-update manager.
"""
