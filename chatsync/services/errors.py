# chatsync/services/errors.py


class ChatSyncError(Exception):
    """Base de todos los errores de la capa de sincronización."""


class BackendError(ChatSyncError):
    """
    Fallo del backend remoto (query, insert, update).
    Los adaptadores envuelven aquí las excepciones de sus SDKs.
    """


class MalformedKeyError(ChatSyncError, ValueError):
    """La clave de conversación no tiene la forma '<int>-<int>'."""

    def __init__(self, key):
        super().__init__(f"Clave de conversación inválida: {key!r}")
        self.key = key
