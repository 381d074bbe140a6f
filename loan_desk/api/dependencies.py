"""
Request dependencies
"""

from fastapi import Request

from ..system import LoanDeskSystem


def get_system(request: Request) -> LoanDeskSystem:
    """The system built by the application lifespan"""
    return request.app.state.system
