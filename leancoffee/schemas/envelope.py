"""Result envelope shared by every gateway operation.

``AppResult`` wraps a single payload, ``PagedResults`` wraps a page of a list.
They are independent models; a paged failure is built from an ``AppResult``
with :meth:`PagedResults.from_result`.
"""

from __future__ import annotations

from math import ceil
from typing import Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, PrivateAttr
from pydantic.alias_generators import to_camel

from leancoffee.services.errors import SessionCoreError

T = TypeVar("T")


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class ValidationErrorItem(CamelModel):
    property_name: str
    error_message: str


class AppResult(CamelModel, Generic[T]):
    success: bool
    data: Optional[T] = None
    message: Optional[str] = None
    error_code: Optional[str] = None
    validation_errors: Optional[List[ValidationErrorItem]] = None

    _status_code: int = PrivateAttr(default=200)

    @property
    def status_code(self) -> int:
        return self._status_code

    @classmethod
    def success_result(
        cls, data: T, message: Optional[str] = None, *, status_code: int = 200
    ) -> "AppResult[T]":
        result = cls(success=True, data=data, message=message)
        result._status_code = status_code
        return result

    @classmethod
    def failure_result(
        cls,
        message: str,
        error_code: Optional[str] = None,
        *,
        status_code: int = 500,
        validation_errors: Optional[List[ValidationErrorItem]] = None,
    ) -> "AppResult[T]":
        result = cls(
            success=False,
            message=message,
            error_code=error_code,
            validation_errors=list(validation_errors or []),
        )
        result._status_code = status_code
        return result

    @classmethod
    def validation_failure(
        cls, errors: List[ValidationErrorItem]
    ) -> "AppResult[T]":
        return cls.failure_result(
            "Validation failed",
            "VALIDATION_ERROR",
            status_code=400,
            validation_errors=errors,
        )

    @classmethod
    def from_error(cls, exc: SessionCoreError) -> "AppResult[T]":
        return cls.failure_result(
            exc.message,
            exc.error_code,
            status_code=exc.status_code,
            validation_errors=[
                ValidationErrorItem(
                    property_name=item.property_name,
                    error_message=item.error_message,
                )
                for item in exc.validation_errors
            ],
        )


class PagedResults(CamelModel, Generic[T]):
    success: bool
    data: Optional[List[T]] = None
    message: Optional[str] = None
    error_code: Optional[str] = None
    validation_errors: Optional[List[ValidationErrorItem]] = None
    total_count: int = 0
    total_pages: int = 0
    current_page: int = 1
    page_size: int = 0

    _status_code: int = PrivateAttr(default=200)

    @property
    def status_code(self) -> int:
        return self._status_code

    @classmethod
    def page(
        cls,
        items: List[T],
        *,
        total_count: int,
        current_page: int,
        page_size: int,
        message: Optional[str] = None,
    ) -> "PagedResults[T]":
        total_pages = ceil(total_count / page_size) if page_size > 0 else 0
        return cls(
            success=True,
            data=items,
            message=message,
            total_count=total_count,
            total_pages=total_pages,
            current_page=current_page,
            page_size=page_size,
        )

    @classmethod
    def from_result(cls, result: AppResult) -> "PagedResults[T]":
        paged = cls(
            success=result.success,
            message=result.message,
            error_code=result.error_code,
            validation_errors=result.validation_errors,
        )
        paged._status_code = result.status_code
        return paged
