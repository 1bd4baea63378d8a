"""
garm-provider-ec2 — ephemeral EC2 runners for GARM.

Turns orchestrator bootstrap requests into tagged EC2 instances and
reclaims them again, using nothing but the instance tags as the record
of what belongs to whom.
"""

__version__ = "0.1.0"
__author__ = "garm-provider-ec2 contributors"

PROVIDER_CONFIG_ENV = "GARM_PROVIDER_CONFIG_FILE"
