"""Response validation."""

from reqflow.validation.matchers import Matcher, parse_matcher
from reqflow.validation.validator import Expectation, Verdict, validate

__all__ = ["Matcher", "parse_matcher", "Expectation", "Verdict", "validate"]
