from dataclasses import dataclass, field
from typing import Annotated

from my_project import models


# simplegen:sort-by-keys -type my_project.models.User
@dataclass
class UsersResponse:
    users: Annotated[list[models.User], 'json:"users"'] = field(default_factory=list)
    request_id: Annotated[str, 'json:"requestId"'] = ""


# simplegen:sort-by-keys -type my_project.models.User -suffix ByEmail -fieldName email -fieldType str
@dataclass
class UsersResponseByEmail:
    users: Annotated[list[models.User], 'json:"users"'] = field(default_factory=list)
    request_id: Annotated[str, 'json:"requestId"'] = ""


# simplegen:sort-by-keys -type list[my_project.models.User] -suffix ByAge -fieldName age
@dataclass
class UsersByAgeResponse:
    groups: Annotated[list[list[models.User]], 'json:"groups"'] = field(
        default_factory=list
    )
