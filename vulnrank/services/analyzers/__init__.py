from .base import Analyzer
from .osv import OSVAnalyzer

__all__ = ["Analyzer", "OSVAnalyzer"]
