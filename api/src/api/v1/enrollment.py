from typing import Annotated
from uuid import UUID
from fastapi import APIRouter, Body, Depends, Path
from pydantic import Field
from starlette import status

from services.enrollment import EnrollmentStateMachine, get_enrollment_state_machine
from tables.payment import Gateway
from .auth import Identity, get_identity
from .schemas import EnrollmentOut, RequestBody


router = APIRouter()


class EnrollmentBody(RequestBody):
    course_id: UUID
    payment_method: Gateway = Field(description='Gateway used if the course is not free')


class CancellationBody(RequestBody):
    reason: str | None = Field(default=None, max_length=500)


@router.post(
    path='',
    status_code=status.HTTP_201_CREATED,
    description=
    'Enrolls the current user in a course<br>'
    'A free course is active right away, a paid one waits in `pending_payment` until its payment succeeds<br>'
    'Asking again for a course that is still awaiting payment returns the same enrollment'
)
async def create_enrollment(
    body: Annotated[EnrollmentBody, Body()],
    identity: Annotated[Identity, Depends(get_identity)],
    enrollments: Annotated[EnrollmentStateMachine, Depends(get_enrollment_state_machine)]
) -> EnrollmentOut:
    enrollment = await enrollments.create_enrollment(identity.user_id, body.course_id, body.payment_method)
    return EnrollmentOut.model_validate(enrollment)


@router.get(path='')
async def list_enrollments(
    identity: Annotated[Identity, Depends(get_identity)],
    enrollments: Annotated[EnrollmentStateMachine, Depends(get_enrollment_state_machine)]
) -> list[EnrollmentOut]:
    return [EnrollmentOut.model_validate(e) for e in await enrollments.list_for_user(identity.user_id)]


@router.get(path='/{enrollment_id}')
async def get_enrollment(
    enrollment_id: Annotated[UUID, Path()],
    identity: Annotated[Identity, Depends(get_identity)],
    enrollments: Annotated[EnrollmentStateMachine, Depends(get_enrollment_state_machine)]
) -> EnrollmentOut:
    enrollment = await enrollments.get(enrollment_id, None if identity.is_operator else identity.user_id)
    return EnrollmentOut.model_validate(enrollment)


@router.put(
    path='/{enrollment_id}/cancel',
    description=
    'Cancels an enrollment of the current user, cancelling an already cancelled one is a no-op<br>'
    'A payment attempt still in flight is cancelled along with it'
)
async def cancel_enrollment(
    enrollment_id: Annotated[UUID, Path()],
    identity: Annotated[Identity, Depends(get_identity)],
    enrollments: Annotated[EnrollmentStateMachine, Depends(get_enrollment_state_machine)],
    body: Annotated[CancellationBody | None, Body()] = None
) -> EnrollmentOut:
    enrollment = await enrollments.cancel(enrollment_id, identity.user_id, body.reason if body else None)
    return EnrollmentOut.model_validate(enrollment)


@router.post(
    path='/{enrollment_id}/complete',
    description='Marks an active enrollment as completed, called by the owner or by the progress tracker'
)
async def complete_enrollment(
    enrollment_id: Annotated[UUID, Path()],
    identity: Annotated[Identity, Depends(get_identity)],
    enrollments: Annotated[EnrollmentStateMachine, Depends(get_enrollment_state_machine)]
) -> EnrollmentOut:
    await enrollments.get(enrollment_id, None if identity.is_operator else identity.user_id)
    return EnrollmentOut.model_validate(await enrollments.mark_completed(enrollment_id))
