# chatsync/services/conversation_id.py
from typing import Tuple

from chatsync.services.errors import MalformedKeyError

SEPARATOR = "-"


def encode(user_a: int, user_b: int) -> str:
    """
    Clave canónica de una conversación entre dos usuarios.
    encode(3, 7) == encode(7, 3) == "3-7"
    """
    smaller, larger = sorted((int(user_a), int(user_b)))
    return f"{smaller}{SEPARATOR}{larger}"


def decode(key: str) -> Tuple[int, int]:
    """
    Inversa de encode(). Lanza MalformedKeyError si la clave no tiene
    exactamente un separador o alguna mitad no es un entero.
    Ojo: las claves que vienen de fuera (deep links, URLs) pasan por aquí.
    """
    if not isinstance(key, str) or key.count(SEPARATOR) != 1:
        raise MalformedKeyError(key)

    first, second = key.split(SEPARATOR)
    if not first.isdecimal() or not second.isdecimal():
        raise MalformedKeyError(key)

    return int(first), int(second)


def key_from_row(row: dict):
    """Clave de un row crudo de 'messages' (None si faltan ids)."""
    sender_id = row.get("sender_id")
    receiver_id = row.get("receiver_id")
    if sender_id is None and isinstance(row.get("sender"), dict):
        sender_id = row["sender"].get("id")
    if receiver_id is None and isinstance(row.get("receiver"), dict):
        receiver_id = row["receiver"].get("id")
    if sender_id is None or receiver_id is None:
        return None
    return encode(sender_id, receiver_id)
