"""Platform Manageability Agent: Intel AMT activation for edge nodes."""

__version__ = "0.1.0"
