"""Provisioning tool for an S3-backed NFS file gateway on AWS."""

__version__ = "0.1.0"
