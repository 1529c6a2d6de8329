"""Published outputs of a deployment."""

from s3nfs_deploy.outputs.projector import OutputProjector

__all__ = ['OutputProjector']
