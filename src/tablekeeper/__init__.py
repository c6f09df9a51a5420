"""Self-healing DynamoDB table provisioning worker."""

__version__ = "0.3.0"
