"""
Utility modules for the PeerLink matching service.
"""
from .logging_config import LogContext, get_log_context, log_performance, setup_logging

__all__ = ['LogContext', 'get_log_context', 'log_performance', 'setup_logging']
