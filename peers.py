"""
Resolve a chat id (and optional username) into an MTProto InputPeer.
"""

import logging
from typing import Any, Optional

from telethon.tl.functions.contacts import ResolveUsernameRequest
from telethon.tl.types import (
    InputPeerChannel,
    InputPeerChat,
    InputPeerUser,
    PeerChannel,
    PeerChat,
    PeerUser,
)

from errors import PeerResolutionError

logger = logging.getLogger(__name__)


def is_basic_group(chat_id: int) -> bool:
    """Basic groups are negative ids outside the -100... channel range."""
    return chat_id < 0 and not str(chat_id).startswith("-100")


async def resolve_peer(client: Any, chat_id: int, username: Optional[str]) -> Any:
    """
    Build the InputPeer for ``chat_id``.

    Basic groups are addressed directly. Users and channels need a
    username because bots cannot list dialogs; it is resolved with
    contacts.resolveUsername to obtain the access hash.
    """
    if is_basic_group(chat_id):
        return InputPeerChat(chat_id=abs(chat_id))

    if not username:
        raise PeerResolutionError(
            f"Cannot resolve peer {chat_id} as bot without username; dialogs are forbidden for bots"
        )

    username = username.lstrip("@")
    try:
        resolved = await client(ResolveUsernameRequest(username=username))
    except Exception as error:
        raise PeerResolutionError(f"contacts.resolveUsername failed for @{username}: {error}") from error

    peer = resolved.peer
    if isinstance(peer, PeerUser):
        user = _find_by_id(resolved.users, peer.user_id)
        if user is not None:
            if getattr(user, "access_hash", None) is None:
                raise PeerResolutionError(f"user access_hash missing for @{username}")
            return InputPeerUser(user_id=peer.user_id, access_hash=user.access_hash)
    elif isinstance(peer, PeerChannel):
        channel = _find_by_id(resolved.chats, peer.channel_id)
        if channel is not None:
            if getattr(channel, "access_hash", None) is None:
                raise PeerResolutionError(f"channel access_hash missing for @{username}")
            return InputPeerChannel(channel_id=peer.channel_id, access_hash=channel.access_hash)
    elif isinstance(peer, PeerChat):
        return InputPeerChat(chat_id=peer.chat_id)

    raise PeerResolutionError(f"Failed to map resolved peer to InputPeer for @{username}")


def _find_by_id(entities: Any, entity_id: int) -> Optional[Any]:
    for entity in entities or ():
        if getattr(entity, "id", None) == entity_id:
            return entity
    return None
