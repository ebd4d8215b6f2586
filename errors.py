class RoomError(Exception):
    """Base class for every failure a command reports back to its caller."""

    code = "ROOM_ERROR"
    message = "Request failed"

    def __init__(self, message: str = None):
        super().__init__(message or self.message)

    @property
    def detail(self) -> str:
        return str(self)

    def to_ack(self) -> dict:
        return {"ok": False, "error": self.detail, "code": self.code}


# Validation

class InvalidDate(RoomError):
    code = "INVALID_DATE"
    message = "Dates must be YYYY-MM-DD, start on or before end"


class InvalidWindow(RoomError):
    code = "INVALID_WINDOW"
    message = "Daily window is invalid (start must be earlier than end)"


class InvalidGranularity(RoomError):
    code = "INVALID_GRANULARITY"
    message = "Slot length must be 15, 30 or 60 minutes"


class InvalidTimeZone(RoomError):
    code = "INVALID_TIME_ZONE"
    message = "Unknown time zone"


class InvalidPin(RoomError):
    code = "INVALID_PIN"
    message = "PIN must be exactly 4 digits"


class NameRequired(RoomError):
    code = "NAME_REQUIRED"
    message = "A name is required to enter the room"


class NameEmpty(RoomError):
    code = "NAME_EMPTY"
    message = "Name cannot be empty"


class TitleEmpty(RoomError):
    code = "TITLE_EMPTY"
    message = "Title cannot be empty"


class InvalidPayload(RoomError):
    code = "INVALID_PAYLOAD"
    message = "Malformed request"


class UnknownCommand(RoomError):
    code = "UNKNOWN_COMMAND"
    message = "Unknown command"


# Authorization

class Unauthorized(RoomError):
    code = "UNAUTHORIZED"
    message = "Not allowed"


class WrongPin(RoomError):
    code = "WRONG_PIN"
    message = "PIN incorrect"


# Lookup / state

class RoomNotFound(RoomError):
    code = "ROOM_NOT_FOUND"
    message = "Room not found or already closed"


class TargetNotFound(RoomError):
    code = "TARGET_NOT_FOUND"
    message = "Member not found"


class CannotKickOwner(RoomError):
    code = "CANNOT_KICK_OWNER"
    message = "The room owner cannot be removed"


class NameTaken(RoomError):
    code = "NAME_TAKEN"

    def __init__(self, name: str = None):
        if name:
            super().__init__(f"Name '{name}' is already taken in this room")
        else:
            super().__init__("Name is already taken in this room")


# Resources

class RoomFull(RoomError):
    code = "ROOM_FULL"
    message = "Room is full"
