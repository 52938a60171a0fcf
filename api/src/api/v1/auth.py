from typing import Annotated, Literal
from uuid import UUID
from fastapi import Depends, Header, HTTPException
from pydantic import BaseModel
from starlette import status


Role = Literal['student', 'admin', 'service']


class Identity(BaseModel):
    user_id: UUID
    role: Role = 'student'

    @property
    def is_operator(self) -> bool:
        return self.role in ('admin', 'service')


# Authentication happens upstream, the gateway forwards the verified identity in headers
async def get_identity(
    x_user_id: Annotated[UUID | None, Header()] = None,
    x_user_role: Annotated[Role, Header()] = 'student'
) -> Identity:
    if x_user_id is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail='Authentication required')
    return Identity(user_id=x_user_id, role=x_user_role)


async def require_operator(identity: Annotated[Identity, Depends(get_identity)]) -> Identity:
    if not identity.is_operator:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail='Operator access required')
    return identity
