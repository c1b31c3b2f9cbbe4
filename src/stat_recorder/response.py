"""
Response envelope handed to the hosting glue layer.

code 1 = success, 0 = failure.
"""

from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional

SUCCESS = 1
FAILURE = 0


@dataclass
class ApiResponse:
    code: int
    message: Optional[str] = None
    data: Any = None

    @classmethod
    def success(cls, data: Any = None) -> 'ApiResponse':
        return cls(code=SUCCESS, data=data)

    @classmethod
    def error(cls, message: str, data: Any = None) -> 'ApiResponse':
        return cls(code=FAILURE, message=message, data=data)

    @property
    def ok(self) -> bool:
        return self.code == SUCCESS

    def to_dict(self) -> Dict:
        return asdict(self)
