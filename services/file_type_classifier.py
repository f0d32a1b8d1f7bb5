"""
File Type Classifier - maps a spreadsheet to one of the five table types.

Classification is by file name first (the report template names, plus
English aliases). When the name is not recognised, or matches more than
one table, the header row is inspected and the table whose distinctive
columns match best wins.
"""

import logging
import re
from pathlib import Path
from typing import Dict, List, Optional, Pattern

from backend.models.enums import IMPORT_TIERS, TableType
from services import spreadsheet_reader
from services.errors import FileParseError
from services.table_catalog import header_match_score

logger = logging.getLogger(__name__)

# Minimum share of distinctive columns for a header-based match
DEFAULT_HEADER_MATCH_THRESHOLD = 0.6

DEFAULT_NAME_PATTERNS: Dict[TableType, List[str]] = {
    TableType.HOSPITAL_INFO: [r'基本.*情况', r'hospital[_\- ]?info', r'basic[_\- ]?info'],
    TableType.DRUG_CATALOG: [r'药品.*目录', r'drug[_\- ]?catalog', r'drug[_\- ]?list', r'^catalog'],
    TableType.DRUG_INBOUND: [r'入库', r'inbound', r'drug[_\- ]?in(?![a-z])', r'purchase'],
    TableType.DRUG_OUTBOUND: [r'出库', r'outbound', r'drug[_\- ]?out(?![a-z])'],
    TableType.DRUG_USAGE: [r'使用', r'usage', r'drug[_\- ]?use(?![a-z])', r'sales'],
}

# Classification order follows the import tiers
_ORDER = [table_type for tier in IMPORT_TIERS for table_type in tier]


class FileTypeClassifier:
    """
    Framework-agnostic file classifier.

    Stateless apart from its compiled patterns; safe to share across threads.
    """

    def __init__(self, name_patterns: Optional[Dict[TableType, List[str]]] = None,
                 header_match_threshold: float = DEFAULT_HEADER_MATCH_THRESHOLD):
        patterns = name_patterns or DEFAULT_NAME_PATTERNS
        self._patterns: Dict[TableType, List[Pattern]] = {
            table_type: [re.compile(p, re.IGNORECASE) for p in patterns.get(table_type, [])]
            for table_type in _ORDER
        }
        self.header_match_threshold = header_match_threshold

    @staticmethod
    def is_supported(file_name: str) -> bool:
        return spreadsheet_reader.is_supported(file_name)

    def name_candidates(self, file_name: str) -> List[TableType]:
        """All table types whose name patterns match the file stem."""
        stem = Path(file_name).stem
        return [
            table_type for table_type, patterns in self._patterns.items()
            if any(p.search(stem) for p in patterns)
        ]

    def classify_name(self, file_name: str) -> Optional[TableType]:
        """Classify by name alone; None when unknown or ambiguous."""
        if not self.is_supported(file_name):
            return None
        candidates = self.name_candidates(file_name)
        return candidates[0] if len(candidates) == 1 else None

    def classify_header(self, headers) -> Optional[TableType]:
        """Classify by header row; None below the match threshold."""
        best, best_score = None, 0.0
        for table_type in _ORDER:
            score = header_match_score(table_type, headers)
            if score > best_score:
                best, best_score = table_type, score
        if best_score >= self.header_match_threshold:
            return best
        return None

    def classify(self, file_name: str, file_path: Optional[str] = None) -> Optional[TableType]:
        """
        Classify a spreadsheet.

        Args:
            file_name: Declared file name (used for name matching)
            file_path: Location of the file on disk, enables header fallback

        Returns:
            The table type, or None when the file is not recognised
        """
        if not self.is_supported(file_name):
            logger.debug(f"Unsupported file extension: {file_name}")
            return None

        candidates = self.name_candidates(file_name)
        if len(candidates) == 1:
            return candidates[0]

        if file_path:
            try:
                headers = spreadsheet_reader.read_header(file_path)
            except FileParseError as e:
                logger.warning(f"Header fallback failed for {file_name}: {e}")
                headers = []
            by_header = self.classify_header(headers)
            if by_header is not None and (not candidates or by_header in candidates):
                logger.info(f"Classified {file_name} as {by_header.name} from header row")
                return by_header

        if candidates:
            # Ambiguous name, take the earliest import tier
            logger.info(f"Ambiguous file name {file_name}: {[c.name for c in candidates]}, "
                        f"using {candidates[0].name}")
            return candidates[0]
        return None
