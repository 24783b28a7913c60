from __future__ import annotations

from fastapi import HTTPException


class PlaceCacheError(Exception):
    """Base for every error raised at the fetch/cache boundary."""


class UnsupportedEnvironment(PlaceCacheError):
    """No usable local storage. Caching is off, the app runs remote-only."""


class RemoteQueryError(PlaceCacheError):
    def __init__(self, code: str, message: str):
        super().__init__(f"{code}: {message}")
        self.code = code
        self.message = message


class StorageWriteError(PlaceCacheError):
    pass


class ParseError(PlaceCacheError):
    pass


def bad_request(code: str, message: str):
    raise HTTPException(status_code=400, detail={"code": code, "message": message})


def service_unavailable(code: str, message: str):
    raise HTTPException(status_code=503, detail={"code": code, "message": message})
