# Failure classification for browser test errors
# Maps raw error messages onto the fixed category taxonomy using ordered message heuristics

import re
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from .models import Category, StrictModeDetails, AssertionDetails

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClassificationRule:
    # One entry of the ordered decision list
    pattern: str
    category: Category
    description: str
    # Further patterns that must all match as well, each searched separately
    requires: Tuple[str, ...] = ()


# Order matters: the first matching rule wins
CLASSIFICATION_RULES: List[ClassificationRule] = [
    ClassificationRule(
        pattern=r"strict mode violation|resolved to \d+ elements",
        category=Category.STRICT_MODE_VIOLATION,
        description="Selector matched more than one element"
    ),
    ClassificationRule(
        pattern=r"locator|selector|not found",
        category=Category.SELECTOR_NOT_FOUND,
        description="Element could not be located"
    ),
    ClassificationRule(
        pattern=r"timeout",
        requires=(r"navigation",),
        category=Category.NAVIGATION_TIMEOUT,
        description="Page navigation did not complete in time"
    ),
    ClassificationRule(
        pattern=r"timeout|network",
        category=Category.NETWORK_TIMEOUT,
        description="Network request or wait timed out"
    ),
    ClassificationRule(
        pattern=r"login|authentication|credential",
        category=Category.AUTHENTICATION_FAILURE,
        description="Login or session problem"
    ),
    ClassificationRule(
        pattern=r"not clickable|not visible|detached",
        category=Category.ELEMENT_NOT_INTERACTIVE,
        description="Element present but not interactable"
    ),
    ClassificationRule(
        pattern=r"expect|assertion",
        category=Category.ASSERTION_FAILURE,
        description="Test expectation not met"
    ),
]

# Operation specific suggestions for wrapped assertions
ASSERTION_FIXES: Dict[str, str] = {
    "to_contain": "Check if the actual text contains the expected substring. "
                  "Consider using partial matches or updating expected text.",
    "to_be": "Verify exact value match. Consider if values need normalization "
             "(trimming, case conversion, etc.)",
    "to_be_visible": "Check if element is present and visible. Verify selector "
                     "accuracy and wait conditions.",
    "to_have_text": "Compare expected vs actual text content. Check for whitespace, "
                    "formatting, or dynamic content issues.",
    "to_have_url": "Verify navigation worked correctly. Check for redirects, query "
                   "parameters, or timing issues.",
    "to_have_count": "Check if the correct number of elements are present. Verify "
                     "selector matches and element loading.",
}
DEFAULT_ASSERTION_FIX = ("Review the expected vs actual values and adjust test "
                         "expectations or application logic")

MAX_FOUND_ELEMENTS = 5

_ELEMENT_COUNT_RE = re.compile(r"resolved to (\d+) elements", re.IGNORECASE)
_SELECTOR_RE = re.compile(r"""locator\(\s*(['"])(.+?)\1\s*\)|locator\(([^)]+)\)""")
_ELEMENT_LINE_RE = re.compile(r"^\s*\d+\)\s+(.+?)(?:\s+aka\s+(.+))?$")


class ErrorClassifier:
    # Pure message classifier; rules are injectable for custom taxonomies

    def __init__(self, rules: Optional[List[ClassificationRule]] = None):
        self.rules = rules if rules is not None else CLASSIFICATION_RULES
        self._compiled = [
            ([re.compile(p, re.IGNORECASE) for p in (rule.pattern,) + tuple(rule.requires)], rule)
            for rule in self.rules
        ]

    def classify(self, message: Any) -> Category:
        # Total function: None and non-strings are coerced to text
        text = "" if message is None else str(message)
        for regexes, rule in self._compiled:
            if all(regex.search(text) for regex in regexes):
                return rule.category
        return Category.UNKNOWN

    def classify_error(self, error: BaseException) -> Category:
        return self.classify(f"{type(error).__name__}: {error}")

    def describe(self, category: Category) -> str:
        for rule in self.rules:
            if rule.category == category:
                return rule.description
        return "Unclassified failure"


_default_classifier = ErrorClassifier()


def classify(message: Any) -> Category:
    return _default_classifier.classify(message)


def classify_error(error: BaseException) -> Category:
    return _default_classifier.classify_error(error)


def extract_strict_mode_details(message: str, selector: Optional[str] = None) -> StrictModeDetails:
    # Parse a strict mode violation message into structured details
    text = message or ""

    count_match = _ELEMENT_COUNT_RE.search(text)
    elements_found = int(count_match.group(1)) if count_match else 0

    selector_match = _SELECTOR_RE.search(text)
    if selector_match:
        found_selector = (selector_match.group(2) or selector_match.group(3)).strip()
    else:
        found_selector = selector or "unknown"

    found_elements = []
    for line in text.splitlines():
        match = _ELEMENT_LINE_RE.match(line)
        if match:
            found_elements.append(match.group(1).strip())
        if len(found_elements) >= MAX_FOUND_ELEMENTS:
            break

    # Fallback chains show up in the locator expression before "resolved to"
    locator_expr = " ".join([re.split(r"resolved to", text, flags=re.IGNORECASE)[0], selector or ""])
    if ".or_(" in locator_expr or ".or(" in locator_expr:
        suggested_fix = "Make selectors more specific or use .first() on the fallback selectors"
    elif elements_found == 2:
        suggested_fix = "Use .first() or make the selector more specific to target only one element"
    elif elements_found > 2:
        suggested_fix = ("Selector is too broad: add a more specific attribute or id "
                         "to target the intended element")
    else:
        suggested_fix = "Use .first() to select the first matching element"

    return StrictModeDetails(
        elements_found=elements_found,
        elements_expected=1,
        selector=found_selector,
        found_elements=found_elements,
        suggested_fix=suggested_fix
    )


def build_assertion_details(operation: Optional[str], expected: Any = None, actual: Any = None,
                            description: Optional[str] = None) -> AssertionDetails:
    operation = operation or "unknown"
    return AssertionDetails(
        assertion_type="expect",
        operation=operation,
        expected_value=expected,
        actual_value=actual,
        description=description or "",
        suggested_fix=ASSERTION_FIXES.get(operation, DEFAULT_ASSERTION_FIX)
    )
