"""Version information for azurekms."""

__version__ = "0.1.0"

PROTOCOL_VERSION = "v1beta1"
RUNTIME_NAME = "Microsoft AzureKMS"
