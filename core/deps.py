from typing import Annotated, Iterator

from fastapi import Header, HTTPException, Request, status
from sqlmodel import Session

from services.shift_clock import ShiftClock

# Standard credentials exception
CREDENTIALS_EXCEPTION = HTTPException(
    status_code=status.HTTP_401_UNAUTHORIZED,
    detail="Missing guard identity",
)


# Authentication lives in the host; it forwards the verified guard id
async def get_current_guard(
    x_guard_id: Annotated[str | None, Header(alias="X-Guard-Id")] = None,
) -> str:
    if not x_guard_id or not x_guard_id.strip():
        raise CREDENTIALS_EXCEPTION
    return x_guard_id.strip()


def get_shift_clock(request: Request) -> ShiftClock:
    return request.app.state.shift_clock


# Session on the app's own time entry store (not the module-level default engine)
def get_session(request: Request) -> Iterator[Session]:
    with Session(request.app.state.engine) as session:
        yield session
