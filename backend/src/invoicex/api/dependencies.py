"""
FastAPI dependencies shared by the route modules.
"""

from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, status

from invoicex.container import Container

CALLER_HEADER = "X-Wallet-Address"


def get_container(request: Request) -> Container:
    """Services of the application handling this request."""
    return request.app.state.container


def get_caller(
    wallet_address: Annotated[str | None, Header(alias=CALLER_HEADER)] = None,
) -> str:
    """
    Address of the wallet acting on this request.

    Signature verification happens in the wallet connector before requests
    reach this service; here the header is only required to be present.
    """
    if wallet_address is None or not wallet_address.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Missing {CALLER_HEADER} header",
        )
    return wallet_address.strip()


ContainerDep = Annotated[Container, Depends(get_container)]
CallerDep = Annotated[str, Depends(get_caller)]
