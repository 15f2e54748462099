"""ecr-deploy - Build, health-check, and push container images to AWS ECR.

This package drives the build/tag/push lifecycle of a CI step: it parses extra
registry credentials, plans image tags, authenticates against every registry,
builds the image, probes a throwaway container, pushes, and always logs out.
"""

__version__ = "0.1.0"
