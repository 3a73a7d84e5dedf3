"""lanmeet - serverless peer discovery for LAN meeting clients."""

__version__ = "0.1.0"
