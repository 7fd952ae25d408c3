from dataclasses import dataclass, field
from datetime import datetime
from typing import Annotated, Any, Optional, TypeAlias

JSONB: TypeAlias = dict[str, Any]


@dataclass
class Common:
    id: Annotated[int, 'json:"id" yaml:"id"'] = 0
    created_at: Annotated[Optional[datetime], 'json:"createdAt" yaml:"createdAt"'] = None


# simplegen:settable-input
# simplegen:paginator
@dataclass
class User(Common):
    first_name: Annotated[str, 'json:"firstName" yaml:"firstName"'] = ""
    email: Annotated[str, 'json:"email" yaml:"email"'] = ""
    age: Annotated[int, 'json:"age" yaml:"age"'] = 0
    settings: Annotated[JSONB, 'json:"settings" yaml:"settings"'] = field(
        default_factory=dict
    )


# PaginateOptions describes pagination.
@dataclass
class PaginateOptions:
    cursor: Annotated[Optional[str], 'json:"cursor"'] = None
    limit: Annotated[int, 'json:"limit"'] = 0
    no_pagination: Annotated[bool, 'json:"noPagination"'] = False

    def is_paginated(self) -> bool:
        return not self.no_pagination
