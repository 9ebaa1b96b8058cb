"""
Key validation and auditing for CIcaDA
"""

from .policies import StrengthVerdict, strength_verdict
from .validator import Validator

__all__ = [
    'StrengthVerdict',
    'strength_verdict',
    'Validator',
]
