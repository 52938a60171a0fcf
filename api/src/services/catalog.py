import httpx
from decimal import Decimal
from functools import lru_cache
from typing import Protocol
from uuid import UUID
from pydantic import BaseModel

from errors import CourseNotFound
from settings import catalog_settings


class CoursePrice(BaseModel):
    amount: Decimal
    currency: str


class CourseCatalog(Protocol):
    async def get_price(self, course_id: UUID) -> CoursePrice:
        ...

    async def aclose(self):
        ...


class HttpCourseCatalog:
    def __init__(self, client: httpx.AsyncClient):
        self.client = client

    async def get_price(self, course_id: UUID) -> CoursePrice:
        response = await self.client.get(url=f'/courses/{course_id}')
        if response.status_code == 404:
            raise CourseNotFound(f'course {course_id} not found')
        response.raise_for_status()

        response_json = response.json()
        return CoursePrice(
            amount=Decimal(str(response_json.get('price') or 0)),
            currency=response_json.get('currency') or 'USD'
        )

    async def aclose(self):
        await self.client.aclose()


@lru_cache
def get_course_catalog() -> CourseCatalog:
    return HttpCourseCatalog(httpx.AsyncClient(
        base_url=catalog_settings.base_url,
        timeout=catalog_settings.timeout
    ))
