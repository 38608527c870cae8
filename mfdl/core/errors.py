"""
Errores del dominio.

Los que terminan un job se guardan en el propio Job (``error`` + ``error_kind``)
y nunca salen de la tarea del job; ``NotFound`` y ``NotReady`` sólo aparecen al
recuperar el artefacto y la capa HTTP los traduce a 404/409.
"""

from __future__ import annotations


class MfdlError(Exception):
    kind = "InternalError"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class LaunchFailure(MfdlError):
    """El ejecutable externo no se pudo lanzar (no existe, sin permisos...)."""

    kind = "LaunchFailure"


class ResolutionFailure(MfdlError):
    """Falló la consulta de metadatos (``--dump-json``)."""

    kind = "ResolutionFailure"

    def __init__(self, message: str, *, auth_contention: bool = False, suggestion: str = ""):
        super().__init__(message)
        self.auth_contention = auth_contention
        self.suggestion = suggestion


class ProcessFailure(MfdlError):
    kind = "ProcessFailure"

    def __init__(self, message: str, returncode: int | None = None):
        super().__init__(message)
        self.returncode = returncode


class NoOutputProduced(MfdlError):
    kind = "NoOutputProduced"


class EmptyOutput(MfdlError):
    kind = "EmptyOutput"


class NotFound(MfdlError):
    kind = "NotFound"


class NotReady(MfdlError):
    kind = "NotReady"

    def __init__(self, message: str, state: str):
        super().__init__(message)
        self.state = state
