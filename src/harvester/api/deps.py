"""
Request dependencies for the control API.
"""

from typing import Annotated

from fastapi import Depends, Request

from harvester.runtime import Runtime


def get_runtime(request: Request) -> Runtime:
    """The runtime built by the application lifespan."""
    return request.app.state.runtime


RuntimeDep = Annotated[Runtime, Depends(get_runtime)]
