"""Tests for generated protocol modules talking to each other."""

import os
import struct
from pathlib import Path

import pytest

from yutani.generator import GeneratorOptions, compile_protocols
from yutani.proto.runtime import AnyObject, Connection, Handle, ProtocolError
from yutani.proto.wire import (
    EncodeError,
    FdQueueExhausted,
    Fixed,
    InvalidEnumValue,
    InvalidNewId,
    InvalidVersion,
    TypeMismatch,
    UnknownObject,
    UnknownOpcode,
)

FILE_DIR = os.path.dirname(os.path.realpath(__file__))
CORE = Path(FILE_DIR).parent / "generator" / "core.wlproto"


def gen_code(role):
    gbl = globals().copy()
    generated_code = compile_protocols(
        [CORE], options=GeneratorOptions(role=role, runtime_import="yutani.proto")
    )
    exec(generated_code, gbl)
    return gbl


def recorder(listener_cls, calls):
    """Instantiate a generated listener ABC that records every call."""

    def method(name):
        return lambda self, this, *args: calls.append((name, this, args))

    namespace = {name: method(name) for name in listener_cls.__abstractmethods__}
    return type("Recorder", (listener_cls,), namespace)()


def message(object_id, opcode, payload=b""):
    return struct.pack("=II", object_id, ((8 + len(payload)) << 16) | opcode) + payload


@pytest.fixture(scope="module")
def client_code():
    return gen_code("client")


@pytest.fixture(scope="module")
def server_code():
    return gen_code("server")


@pytest.fixture
def pair(client_code, server_code):
    """A client and a server connection sharing a display object."""
    client = Connection(client_code["INTERFACES"], role="client")
    server = Connection(server_code["INTERFACES"], role="server")
    display = client.create(client_code["CoreDisplay"], 1)
    server_display = server.adopt(server_code["CoreDisplay"], display.id, 1)
    return client, server, display, server_display


def transfer(source, target):
    data, fds = source.flush()
    target.feed(data, fds)
    return target.dispatch_pending()


def describe_sync():
    def encodes_sync_in_twelve_bytes(expect, pair):
        client, _, display, _ = pair
        callback = display.sync()

        data, fds = client.flush()
        expect(len(data)) == 12
        expect(data) == message(display.id, 0, struct.pack("=I", callback.id))
        expect(fds) == []

    def delivers_request_to_server(expect, pair, server_code):
        client, server, display, server_display = pair
        calls = []
        server_display.listener = recorder(server_code["CoreDisplayListener"], calls)

        callback = display.sync()
        expect(transfer(client, server)) == 1

        name, this, (server_callback,) = calls[0]
        expect(name) == "sync"
        expect(this is server_display) == True
        expect(isinstance(server_callback, server_code["CoreCallback"])) == True
        expect(server_callback.id) == callback.id
        expect(server.get(callback.id) is server_callback) == True

    def destroys_callback_after_done(expect, pair, client_code):
        client, server, display, _ = pair
        calls = []
        callback = display.sync()
        callback.listener = recorder(client_code["CoreCallbackListener"], calls)
        transfer(client, server)

        server.get(callback.id).done(42)
        expect(transfer(server, client)) == 1

        expect(calls) == [("done", callback, (42,))]
        expect(callback.alive) == False
        expect(client.get(callback.id)) == None

    def dispatches_without_listener(expect, pair):
        client, server, display, _ = pair
        callback = display.sync()
        expect(transfer(client, server)) == 1
        expect(server.get(callback.id) is not None) == True


def describe_arguments():
    @pytest.fixture
    def surfaces(pair, client_code, server_code):
        client, server, _, _ = pair
        surface = client.create(client_code["CoreSurface"], 3)
        server_surface = server.adopt(server_code["CoreSurface"], surface.id, 3)
        calls = []
        server_surface.listener = recorder(server_code["CoreSurfaceListener"], calls)
        return client, server, surface, server_surface, calls

    def passes_nullable_objects(expect, surfaces):
        client, server, surface, _, calls = surfaces
        surface.attach(None, 1, -2)
        transfer(client, server)
        expect(calls[0][2]) == (None, 1, -2)

    def passes_typed_objects(expect, surfaces, client_code, server_code):
        client, server, surface, _, calls = surfaces
        buffer = client.create(client_code["CoreBuffer"], 1)
        server_buffer = server.adopt(server_code["CoreBuffer"], buffer.id, 1)
        surface.attach(buffer, 0, 0)
        transfer(client, server)
        expect(calls[0][2]) == (server_buffer, 0, 0)

    def rejects_objects_of_other_interfaces(expect, surfaces, client_code, server_code):
        client, server, surface, _, _ = surfaces
        buffer = client.create(client_code["CoreBuffer"], 1)
        server.adopt(server_code["CoreSurface"], buffer.id, 1)
        surface.attach(buffer, 0, 0)

        with pytest.raises(TypeMismatch):
            transfer(client, server)

    def passes_fixed_values(expect, surfaces):
        client, server, surface, _, calls = surfaces
        surface.set_scale(1.5)
        transfer(client, server)

        (scale,) = calls[0][2]
        expect(scale) == Fixed(384)
        expect(float(scale)) == 1.5

    def passes_strings_and_arrays(expect, surfaces):
        client, server, surface, _, calls = surfaces
        surface.set_title("wörld")
        surface.set_title(None)
        surface.set_data(b"\x01\x02\x03")
        transfer(client, server)

        expect([c[2] for c in calls]) == [("wörld",), (None,), (b"\x01\x02\x03",)]

    def passes_enums(expect, surfaces, server_code):
        client, server, surface, _, calls = surfaces
        Surface = server_code["CoreSurface"]
        surface.set_buffer_transform(2)
        surface.set_edges(Surface.Edges.TOP | Surface.Edges.LEFT)
        transfer(client, server)

        expect(calls[0][2]) == (Surface.Transform.TRANSFORM_180,)
        expect(calls[1][2]) == (Surface.Edges.TOP | Surface.Edges.LEFT,)

    def consumes_two_fds_in_order(expect, surfaces):
        client, server, surface, _, calls = surfaces
        surface.send_fds(10, 11)

        data, fds = client.flush()
        expect(fds) == [10, 11]
        server.feed(data, [10, 11, 99])
        server.dispatch_pending()

        expect(calls[0][2]) == (10, 11)
        expect(server.pending_fds) == 1

    def fails_without_queued_fds(expect, surfaces):
        client, server, surface, _, _ = surfaces
        surface.send_fds(10, 11)
        data, _ = client.flush()
        server.feed(data, [10])

        with pytest.raises(FdQueueExhausted):
            server.dispatch_pending()

    def rejects_invalid_enum_values(expect, surfaces):
        _, server, surface, _, _ = surfaces
        server.feed(message(surface.id, 1, struct.pack("=i", 3)))
        with pytest.raises(InvalidEnumValue):
            server.dispatch_pending()

    def rejects_invalid_bitfield_values(expect, surfaces):
        _, server, surface, _, _ = surfaces
        server.feed(message(surface.id, 6, struct.pack("=I", 16)))
        with pytest.raises(InvalidEnumValue):
            server.dispatch_pending()


def describe_errors():
    def rejects_unknown_opcodes(expect, pair):
        _, server, display, _ = pair
        server.feed(message(display.id, 9))
        with pytest.raises(UnknownOpcode):
            server.dispatch_pending()

    def rejects_messages_newer_than_object(expect, pair, client_code, server_code):
        client, server, _, _ = pair
        surface = client.create(client_code["CoreSurface"], 1)
        server.adopt(server_code["CoreSurface"], surface.id, 1)

        with pytest.raises(EncodeError):
            surface.set_scale(2.0)

        server.feed(message(surface.id, 2, struct.pack("=i", 512)))
        with pytest.raises(UnknownOpcode):
            server.dispatch_pending()

    def rejects_unknown_objects(expect, pair):
        _, server, _, _ = pair
        server.feed(message(77, 0))
        with pytest.raises(UnknownObject):
            server.dispatch_pending()

    def rejects_reused_new_ids(expect, pair):
        _, server, display, _ = pair
        server.feed(message(display.id, 0, struct.pack("=I", display.id)))
        with pytest.raises(InvalidNewId):
            server.dispatch_pending()

    def is_fatal(expect, pair):
        _, server, _, _ = pair
        server.feed(message(77, 0))
        with pytest.raises(UnknownObject):
            server.dispatch_pending()

        expect(isinstance(server.error, UnknownObject)) == True
        with pytest.raises(ProtocolError):
            server.dispatch_pending()

    def waits_for_complete_messages(expect, pair):
        client, server, display, _ = pair
        display.sync()
        data, _ = client.flush()

        server.feed(data[:10])
        expect(server.dispatch_pending()) == 0
        server.feed(data[10:])
        expect(server.dispatch_pending()) == 1


def describe_lifecycle():
    def sends_destructor_and_forgets_object(expect, pair, client_code, server_code):
        client, server, _, _ = pair
        pool = client.create(client_code["CoreShmPool"], 1)
        server.adopt(server_code["CoreShmPool"], pool.id, 1)

        pool.destroy()
        expect(pool.alive) == False
        expect(client.get(pool.id)) == None
        with pytest.raises(EncodeError):
            pool.create_buffer(0, 1, 1, 4, 0)

        transfer(client, server)
        expect(server.get(pool.id)) == None

    def forgets_objects_of_unsent_messages(expect, pair, client_code):
        client, _, _, _ = pair
        shm = client.create(client_code["CoreShm"], 2)
        count = len(client)

        with pytest.raises(EncodeError):
            shm.create_pool(3, 2**40)

        expect(len(client)) == count
        expect(client.flush()) == (b"", [])
        pool = shm.create_pool(3, 4096)
        expect(pool.id) == shm.id + 1

    def forgets_objects_when_sending_on_destroyed_object(expect, pair, client_code):
        client, _, _, _ = pair
        pool = client.create(client_code["CoreShmPool"], 1)
        pool.destroy()
        client.flush()
        count = len(client)

        with pytest.raises(EncodeError):
            pool.create_buffer(0, 1, 1, 4, 0)
        expect(len(client)) == count

    def drops_events_in_flight_to_destroyed_objects(expect, pair, client_code, server_code):
        client, server, _, _ = pair
        buffer = client.create(client_code["CoreBuffer"], 1)
        server_buffer = server.adopt(server_code["CoreBuffer"], buffer.id, 1)
        calls = []
        buffer.listener = recorder(client_code["CoreBufferListener"], calls)

        server_buffer.release()
        buffer.destroy()
        expect(transfer(server, client)) == 1
        expect(transfer(client, server)) == 1

        expect(calls) == []
        expect(client.error) == None
        expect(client.get(buffer.id)) == None
        expect(server.get(buffer.id)) == None

    def consumes_fds_of_messages_to_destroyed_objects(expect, pair, client_code, server_code):
        client, server, display, _ = pair
        surface = client.create(client_code["CoreSurface"], 1)
        server_surface = server.adopt(server_code["CoreSurface"], surface.id, 1)
        calls = []
        server_surface.listener = recorder(server_code["CoreSurfaceListener"], calls)

        surface.send_fds(10, 11)
        server.retire(server_surface)
        display.sync()
        data, fds = client.flush()
        server.feed(data, fds)

        expect(server.dispatch_pending()) == 2
        expect(calls) == []
        expect(server.pending_fds) == 0

    def releases_ids_of_destroyed_objects(expect, pair, client_code):
        client, _, _, _ = pair
        buffer = client.create(client_code["CoreBuffer"], 1)
        buffer.destroy()

        expect(client.lookup(buffer.id, "core_buffer", False, "m.a")) == None
        client.release_id(buffer.id)
        with pytest.raises(UnknownObject):
            client.lookup(buffer.id, "core_buffer", False, "m.a")

    def creates_objects_with_parent_version(expect, pair, client_code):
        client, _, _, _ = pair
        shm = client.create(client_code["CoreShm"], 2)
        pool = shm.create_pool(5, 4096)

        expect(isinstance(pool, client_code["CoreShmPool"])) == True
        expect(pool.version) == 2
        expect(client.flush()[1]) == [5]

    def binds_generic_new_ids(expect, pair, client_code, server_code):
        client, server, display, _ = pair
        registry = display.get_registry()
        transfer(client, server)
        server_registry = server.get(registry.id)

        calls = []
        server_registry.listener = recorder(server_code["CoreRegistryListener"], calls)
        shm = registry.bind(7, client_code["CoreShm"], 2)
        transfer(client, server)

        name, this, (global_name, server_shm) = calls[0]
        expect(name) == "bind"
        expect(global_name) == 7
        expect(isinstance(server_shm, server_code["CoreShm"])) == True
        expect(server_shm.version) == 2
        expect(server_shm.id) == shm.id
        expect(this is server_registry) == True
        expect(isinstance(server_registry, server_code["CoreRegistry"])) == True

    def rejects_unsupported_versions(expect, pair):
        client, server, display, _ = pair
        registry = display.get_registry()
        transfer(client, server)

        registry.bind(7, "core_shm", 3)
        with pytest.raises(InvalidVersion):
            transfer(client, server)

    def tags_unknown_interfaces(expect, pair, server_code):
        client, server, display, _ = pair
        registry = display.get_registry()
        transfer(client, server)

        calls = []
        server.get(registry.id).listener = recorder(server_code["CoreRegistryListener"], calls)
        registry.bind(1, "ext_window", 1)
        transfer(client, server)

        unknown = calls[0][2][1]
        expect(isinstance(unknown, AnyObject)) == True
        expect(unknown.interface) == "ext_window"
        with pytest.raises(TypeMismatch):
            unknown.downcast(server_code["CoreShm"])

    def downcasts_tagged_objects(expect, server_code):
        server = Connection(role="server")
        handle = server.bind("core_shm", 5, 1)
        expect(isinstance(handle, AnyObject)) == True

        shm = handle.downcast(server_code["CoreShm"])
        expect(isinstance(shm, server_code["CoreShm"])) == True
        expect(server.get(5) is shm) == True
        expect(handle.alive) == False

    def receives_events(expect, pair, client_code):
        client, server, display, server_display = pair
        calls = []
        display.listener = recorder(client_code["CoreDisplayListener"], calls)

        server_display.error(server_display, 1, "bad request")
        server_display.delete_id(3)
        transfer(server, client)

        expect(calls) == [("error", display, (display, 1, "bad request")), ("delete_id", display, (3,))]
        expect(isinstance(display, Handle)) == True
