"""Runtime support for yutani protocol communication.

A Connection owns the object table of one client/server connection and the
byte and file descriptor buffers in both directions. It does no I/O: the
caller feeds received bytes and descriptors in, flushes outgoing ones out, and
moves them over whatever transport it uses.
"""

import logging
from collections.abc import Iterable, Mapping
from typing import Any, ClassVar, Literal, TypeVar, overload

from .wire import (
    HEADER_SIZE,
    DecodeError,
    EncodeError,
    FdQueue,
    InvalidNewId,
    InvalidVersion,
    NullValue,
    TruncatedMessage,
    TypeMismatch,
    UnknownObject,
    UnknownOpcode,
    WireMessage,
    unpack_header,
)

logger = logging.getLogger(__name__)

Role = Literal["client", "server"]

# Object id ranges, as allocated by each side
CLIENT_ID_MIN = 0x00000001
CLIENT_ID_MAX = 0xFEFFFFFF
SERVER_ID_MIN = 0xFF000000
SERVER_ID_MAX = 0xFFFFFFFF

H = TypeVar("H", bound="Handle")


class ProtocolError(RuntimeError):
    """Raised when a connection is used after a fatal protocol error."""


class Handle:
    """Base class for generated interface handles.

    Generated subclasses define:
        INTERFACE: ClassVar[str]  # interface name
        VERSION: ClassVar[int]  # highest version the schema declares
        REQUESTS / EVENTS: ClassVar[tuple[str, ...]]  # message names by opcode

    plus one send method per outgoing message and a ``_dispatch`` method for
    incoming ones. Incoming messages are delivered to ``listener``.
    """

    INTERFACE: ClassVar[str] = ""
    VERSION: ClassVar[int] = 0
    REQUESTS: ClassVar[tuple[str, ...]] = ()
    EVENTS: ClassVar[tuple[str, ...]] = ()

    def __init__(self, connection: "Connection", object_id: int, version: int) -> None:
        self.connection = connection
        self.id = object_id
        self.version = version
        self.listener: Any = None
        self.alive = True

    @property
    def interface(self) -> str:
        return self.INTERFACE

    def downcast(self, cls: type[H]) -> H:
        """Return this object as an instance of a concrete handle class.

        Raises TypeMismatch if the object's interface is not cls's interface.
        """
        if isinstance(self, cls):
            return self
        if self.interface != cls.INTERFACE:
            raise TypeMismatch(f"{self!r} is not a {cls.INTERFACE}")
        return self.connection._rebind(self, cls)

    def _send(self, message: WireMessage) -> None:
        if not self.alive:
            raise EncodeError(f"{self!r} has been destroyed")
        self.connection.send(message)

    def _require(self, since: int, name: str) -> None:
        if self.version < since:
            raise EncodeError(f"{self!r}.{name} requires version {since}, bound at {self.version}")

    def _dispatch(self, opcode: int, data: memoryview, fds: FdQueue) -> None:
        raise UnknownOpcode(f"{self!r}: no decoder for opcode {opcode}")

    def __repr__(self) -> str:
        return f"{self.interface}@{self.id}"


class AnyObject(Handle):
    """Handle tagged with a runtime interface name that has no generated class.

    Use ``downcast()`` once the concrete class is known.
    """

    def __init__(self, connection: "Connection", object_id: int, version: int, interface: str) -> None:
        super().__init__(connection, object_id, version)
        self._interface = interface

    @property
    def interface(self) -> str:
        return self._interface


def handle_id(handle: Handle | None, nullable: bool, where: str) -> int:
    """Return the wire id of an object argument."""
    if handle is None:
        if nullable:
            return 0
        raise EncodeError(f"{where}: object must not be None")
    if not handle.alive:
        raise EncodeError(f"{where}: {handle!r} has been destroyed")
    return handle.id


class Connection:
    """Object table and message buffers for one connection.

    Messages are dispatched strictly in arrival order, since new_id arguments
    create objects that later messages refer to. A decode failure is fatal:
    the connection records it and refuses any further use.

    Example:
        conn = Connection(core.INTERFACES, role="client")
        display = conn.create(core.CoreDisplay, 1)
        callback = display.sync()
        callback.listener = MyCallbackListener()
        sock.sendmsg(*conn.flush())
        ...
        conn.feed(data, fds)
        conn.dispatch_pending()
    """

    def __init__(self, *tables: Mapping[str, type[Handle]], role: Role = "client") -> None:
        if role not in ("client", "server"):
            raise ValueError(f"Unknown role {role}")

        self.role = role
        self._classes: dict[str, type[Handle]] = {}
        for table in tables:
            self._classes.update(table)

        self._objects: dict[int, Handle] = {}
        # Objects we destroyed that the peer may still address
        self._zombies: dict[int, Handle] = {}
        self._next_id = CLIENT_ID_MIN if role == "client" else SERVER_ID_MIN
        self._in = bytearray()
        self._in_fds = FdQueue()
        self._out = bytearray()
        self._out_fds: list[int] = []
        self.error: DecodeError | None = None

    def __len__(self) -> int:
        return len(self._objects)

    def get(self, object_id: int) -> Handle | None:
        return self._objects.get(object_id)

    def _check_usable(self) -> None:
        if self.error is not None:
            raise ProtocolError(f"connection failed: {self.error}") from self.error

    def _instantiate(self, interface: type[Handle] | str, object_id: int, version: int) -> Handle:
        if isinstance(interface, str):
            cls = self._classes.get(interface)
            if cls is None:
                return AnyObject(self, object_id, version, interface)
            return cls(self, object_id, version)
        return interface(self, object_id, version)

    def _allocate_id(self) -> int:
        high = CLIENT_ID_MAX if self.role == "client" else SERVER_ID_MAX
        if self._next_id > high:
            raise EncodeError("object ids exhausted")
        object_id = self._next_id
        self._next_id += 1
        return object_id

    @overload
    def create(self, interface: type[H], version: int) -> H: ...

    @overload
    def create(self, interface: str, version: int) -> Handle: ...

    def create(self, interface: type[Handle] | str, version: int) -> Handle:
        """Allocate a new local object, e.g. for the new_id of an outgoing message."""
        if version < 1:
            raise EncodeError(f"invalid version {version}")
        handle = self._instantiate(interface, self._allocate_id(), version)
        self._objects[handle.id] = handle
        logger.debug("created %r (version %d)", handle, version)
        return handle

    def _check_new_id(self, object_id: int, where: str) -> None:
        low, high = (SERVER_ID_MIN, SERVER_ID_MAX) if self.role == "client" else (CLIENT_ID_MIN, CLIENT_ID_MAX)
        if not low <= object_id <= high:
            raise InvalidNewId(f"{where}: id {object_id} is outside the peer's range")
        if object_id in self._objects:
            raise InvalidNewId(f"{where}: id {object_id} is already in use")
        if self._zombies.pop(object_id, None) is not None:
            logger.debug("peer reused id %d", object_id)

    @overload
    def adopt(self, interface: type[H], object_id: int, version: int, where: str = ...) -> H: ...

    @overload
    def adopt(self, interface: str, object_id: int, version: int, where: str = ...) -> Handle: ...

    def adopt(
        self, interface: type[Handle] | str, object_id: int, version: int, where: str = "new_id"
    ) -> Handle:
        """Bind an id allocated by the peer to a statically known interface."""
        self._check_new_id(object_id, where)
        handle = self._instantiate(interface, object_id, version)
        self._objects[object_id] = handle
        logger.debug("adopted %r (version %d)", handle, version)
        return handle

    def bind(self, interface: str, object_id: int, version: int, where: str = "new_id") -> Handle:
        """Bind an id allocated by the peer, with interface and version from the wire."""
        cls = self._classes.get(interface)
        if version < 1 or (cls is not None and version > cls.VERSION):
            raise InvalidVersion(f"{where}: {interface} version {version} is not supported")
        return self.adopt(interface, object_id, version, where)

    def lookup(self, object_id: int, interface: str | None, nullable: bool, where: str) -> Handle | None:
        """Resolve an object argument, checking its interface when it is bound."""
        if object_id == 0:
            if nullable:
                return None
            raise NullValue(f"{where}: null object for a non-nullable argument")

        handle = self._objects.get(object_id)
        if handle is None:
            if object_id in self._zombies:
                return None
            raise UnknownObject(f"{where}: unknown object {object_id}")
        if interface is not None and handle.interface != interface:
            raise TypeMismatch(f"{where}: expected {interface}, got {handle!r}")
        return handle

    def destroy(self, handle: Handle) -> None:
        """Remove an object from the table; its id becomes invalid."""
        handle.alive = False
        if self._objects.get(handle.id) is handle:
            del self._objects[handle.id]
        if self._zombies.get(handle.id) is handle:
            del self._zombies[handle.id]
        logger.debug("destroyed %r", handle)

    def retire(self, handle: Handle) -> None:
        """Destroy an object after sending its destructor.

        The peer may already have sent messages to the object. Those are
        still decoded, so descriptors and new objects stay in step, but they
        never reach the listener. The id stays reserved until release_id()
        or until the peer reuses it.
        """
        self.destroy(handle)
        self._zombies[handle.id] = handle

    def release_id(self, object_id: int) -> None:
        """Free the id of a retired object once the peer confirms its deletion."""
        if self._zombies.pop(object_id, None) is not None:
            logger.debug("released id %d", object_id)

    def discard(self, handle: Handle) -> None:
        """Forget an object created for a message that was never sent."""
        self.destroy(handle)
        if handle.id == self._next_id - 1:
            self._next_id -= 1

    def _rebind(self, handle: Handle, cls: type[H]) -> H:
        replacement = cls(self, handle.id, handle.version)
        replacement.listener = handle.listener
        if self._objects.get(handle.id) is handle:
            self._objects[handle.id] = replacement
        handle.alive = False
        return replacement

    def _describe(self, handle: Handle, opcode: int, incoming: bool) -> str:
        names = handle.EVENTS if (self.role == "client") == incoming else handle.REQUESTS
        name = names[opcode] if opcode < len(names) else f"opcode {opcode}"
        return f"{handle!r}.{name}"

    def send(self, message: WireMessage) -> None:
        """Queue an encoded message for transmission."""
        self._check_usable()
        self._out += message.data
        self._out_fds.extend(message.fds)
        handle = self._objects.get(message.object_id)
        if handle is not None and logger.isEnabledFor(logging.DEBUG):
            logger.debug(" -> %s", self._describe(handle, message.opcode, incoming=False))

    def flush(self) -> tuple[bytes, list[int]]:
        """Take all queued outgoing bytes and descriptors."""
        data, fds = bytes(self._out), self._out_fds
        self._out = bytearray()
        self._out_fds = []
        return data, fds

    def feed(self, data: bytes, fds: Iterable[int] = ()) -> None:
        """Append received bytes and descriptors to the input buffers."""
        self._check_usable()
        self._in += data
        self._in_fds.push(fds)

    @property
    def pending_fds(self) -> int:
        """Number of received descriptors not yet consumed by a message."""
        return len(self._in_fds)

    def dispatch_pending(self) -> int:
        """Decode and dispatch every complete buffered message in arrival order.

        Returns the number of messages dispatched. Incomplete trailing data
        stays buffered until more bytes are fed.
        """
        self._check_usable()

        count = 0
        try:
            while len(self._in) >= HEADER_SIZE:
                object_id, opcode, size = unpack_header(self._in)
                if size < HEADER_SIZE:
                    raise TruncatedMessage(f"message size {size} is smaller than its header")
                if len(self._in) < size:
                    break

                body = bytes(self._in[HEADER_SIZE:size])
                del self._in[:size]

                handle = self._objects.get(object_id) or self._zombies.get(object_id)
                if handle is None:
                    raise UnknownObject(f"message for unknown object {object_id}")
                if logger.isEnabledFor(logging.DEBUG):
                    dropped = "" if handle.alive else " (destroyed, dropped)"
                    logger.debug(" <- %s%s", self._describe(handle, opcode, incoming=True), dropped)
                if not handle.alive and isinstance(handle, AnyObject):
                    # No decoder to consume its descriptors
                    count += 1
                    continue

                handle._dispatch(opcode, memoryview(body), self._in_fds)
                count += 1
        except DecodeError as exc:
            self.error = exc
            logger.error("fatal protocol error: %s", exc)
            raise

        return count
