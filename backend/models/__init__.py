from models.user import User
from models.room import Room, RoomMember
from models.message import Message
from models.invitation import Invitation

__all__ = ["User", "Room", "RoomMember", "Message", "Invitation"]
