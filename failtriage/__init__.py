# failtriage: failure classification, capture, storage and analysis for browser test runs

from .classifier import ErrorClassifier, classify, classify_error, extract_strict_mode_details, build_assertion_details
from .config import AnalysisConfig, load_config
from .context_capture import ContextCapture
from .error_store import ErrorStore, load_latest_records
from .models import (
    Category, FailureRecord, FailureContext, RecoveryOutcome, RunSummary, CaptureResult,
    PageSnapshot, StrictModeDetails, AssertionDetails, Insight, InsightPriority, HistoricalAnalysis
)
from .pattern_analyzer import PatternAnalyzer
from .reporting import ReportRenderer

__version__ = "0.1.0"

__all__ = [
    "AnalysisConfig", "load_config",
    "Category", "FailureRecord", "FailureContext", "RecoveryOutcome", "RunSummary", "CaptureResult",
    "PageSnapshot", "StrictModeDetails", "AssertionDetails", "Insight", "InsightPriority", "HistoricalAnalysis",
    "ErrorClassifier", "classify", "classify_error", "extract_strict_mode_details", "build_assertion_details",
    "ContextCapture", "ErrorStore", "load_latest_records", "PatternAnalyzer", "ReportRenderer",
]
