"""ImageBuild - remote container image builds for a cluster operator.

This package drives a remote BuildKit daemon to build and push container
images, and publishes the lifecycle of each ImageBuild object to a message
broker exactly once per phase transition.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
