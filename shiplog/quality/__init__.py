"""
Quality gates applied to completion claims.

Stage A runs the project's tests; stage B asks an independent reviewer.
"""

from shiplog.quality.pipeline import GateReport, QualityGatePipeline
from shiplog.quality.review_gate import ReviewGate
from shiplog.quality.test_gate import TestGate, TestGateResult, detect_test_command

__all__ = [
    "GateReport",
    "QualityGatePipeline",
    "ReviewGate",
    "TestGate",
    "TestGateResult",
    "detect_test_command",
]
