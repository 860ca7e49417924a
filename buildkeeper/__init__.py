"""
buildkeeper: a build-and-serve supervisor.

Keeps a web application's dependencies and build output in sync with its
manifest and sources, and keeps one instance of its server running.
"""

__version__ = "0.1.0"
