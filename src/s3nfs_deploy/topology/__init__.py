"""Desired resource graph: descriptors, references, access rules and the topology builder."""

from s3nfs_deploy.topology.references import Ref, Join, resolve, serialize
from s3nfs_deploy.topology.access import AccessPolicy, IngressRule
from s3nfs_deploy.topology.descriptors import ResourceDescriptor, CustomDescriptor
from s3nfs_deploy.topology.graph import ResourceGraph
from s3nfs_deploy.topology.builder import TopologyBuilder

__all__ = [
    'Ref',
    'Join',
    'resolve',
    'serialize',
    'AccessPolicy',
    'IngressRule',
    'ResourceDescriptor',
    'CustomDescriptor',
    'ResourceGraph',
    'TopologyBuilder',
]
