"""
Web Security Audit - passive security posture analysis of one web endpoint
"""

__version__ = "1.0.0"

from websec_audit.util.types import (
    AnalysisOptions, AnalyzerConfig, CategoryAnalysis, SecurityReport, Severity,
    ValidationResult, VulnerabilityFinding
)
from websec_audit.scanner.errors import AnalysisError, NetworkError, ValidationError
from websec_audit.scanner.runner import SecurityAnalyzer, analyze, check_url_status, validate_url

__all__ = [
    'AnalysisOptions', 'AnalyzerConfig', 'CategoryAnalysis', 'SecurityReport', 'Severity',
    'ValidationResult', 'VulnerabilityFinding',
    'AnalysisError', 'NetworkError', 'ValidationError',
    'SecurityAnalyzer', 'analyze', 'check_url_status', 'validate_url',
]
