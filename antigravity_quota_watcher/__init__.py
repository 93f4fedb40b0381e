"""Tray watcher for the Antigravity language server's quota state."""
from .discovery import DiscoveryOutcome, PortDiscovery, discover
from .errors import DiscoveryError, DiscoveryExhausted, NoDiagnosticTool

__version__ = '1.0.0'

__all__ = ['DiscoveryError', 'DiscoveryExhausted', 'DiscoveryOutcome', 'NoDiagnosticTool', 'PortDiscovery', 'discover']
