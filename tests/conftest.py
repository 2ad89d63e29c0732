import sys
from collections.abc import Callable, Iterable
from pathlib import Path

import pytest
from google.protobuf import descriptor_pb2

GENERATOR_DIR = Path(__file__).resolve().parent.parent
if str(GENERATOR_DIR) not in sys.path:
    sys.path.insert(0, str(GENERATOR_DIR))

import protoc_gen_route as gen  # noqa: E402

OPTIONS_PROTO = "sphere/options/options.proto"
ROUTE_OPTION_NUMBER = 50100

_FIELD = descriptor_pb2.FieldDescriptorProto


def descriptor_file() -> descriptor_pb2.FileDescriptorProto:
    return descriptor_pb2.FileDescriptorProto.FromString(
        descriptor_pb2.DESCRIPTOR.serialized_pb
    )


def options_file(
    *,
    extendee: str = ".google.protobuf.MethodOptions",
    label: int = descriptor_pb2.FieldDescriptorProto.LABEL_OPTIONAL,
) -> descriptor_pb2.FileDescriptorProto:
    """sphere/options/options.proto built by hand:

    message KeyValuePair { string key = 1; string value = 2; }
    message Options { string key = 1; repeated KeyValuePair extra = 2; }
    extend google.protobuf.MethodOptions { Options options = 50100; }
    """
    file_proto = descriptor_pb2.FileDescriptorProto(
        name=OPTIONS_PROTO,
        package="sphere.options",
        syntax="proto3",
        dependency=["google/protobuf/descriptor.proto"],
    )
    pair = file_proto.message_type.add(name="KeyValuePair")
    pair.field.add(name="key", number=1, type=_FIELD.TYPE_STRING, label=_FIELD.LABEL_OPTIONAL)
    pair.field.add(name="value", number=2, type=_FIELD.TYPE_STRING, label=_FIELD.LABEL_OPTIONAL)

    options = file_proto.message_type.add(name="Options")
    options.field.add(name="key", number=1, type=_FIELD.TYPE_STRING, label=_FIELD.LABEL_OPTIONAL)
    options.field.add(
        name="extra",
        number=2,
        type=_FIELD.TYPE_MESSAGE,
        label=_FIELD.LABEL_REPEATED,
        type_name=".sphere.options.KeyValuePair",
    )

    file_proto.extension.add(
        name="options",
        number=ROUTE_OPTION_NUMBER,
        type=_FIELD.TYPE_MESSAGE,
        label=label,
        type_name=".sphere.options.Options",
        extendee=extendee,
    )
    return file_proto


@pytest.fixture
def route_option() -> gen.RouteOption:
    descriptor_set = gen.load_descriptor_set([descriptor_file(), options_file()])
    option = gen.resolve_route_option(descriptor_set.pool)
    assert option is not None
    return option


@pytest.fixture
def annotate(
    route_option: gen.RouteOption,
) -> Callable[..., None]:
    def _annotate(
        method: descriptor_pb2.MethodDescriptorProto,
        key: str,
        extra: Iterable[tuple[str, str]] = (),
    ) -> None:
        options = route_option.options_class()
        route = options.Extensions[route_option.extension]
        route.SetInParent()
        route.key = key
        for name, value in extra:
            route.extra.add(key=name, value=value)
        method.options.MergeFromString(options.SerializeToString())

    return _annotate


@pytest.fixture
def make_proto_file(
    annotate: Callable[..., None],
) -> Callable[..., descriptor_pb2.FileDescriptorProto]:
    """Build a .proto file from a compact description.

    services is a list of (service_name, methods); each method is a dict with
    "name" and optionally "key", "extra", "comment", "input" and "output".
    Without "input"/"output", <Name>Request and <Name>Response messages are
    declared in the file. Methods without "key" carry no route option.
    """

    def _make_proto_file(
        name: str,
        package: str,
        services: list[tuple[str, list[dict[str, object]]]],
    ) -> descriptor_pb2.FileDescriptorProto:
        file_proto = descriptor_pb2.FileDescriptorProto(
            name=name,
            package=package,
            syntax="proto3",
            dependency=[OPTIONS_PROTO],
        )
        prefix = f".{package}." if package else "."
        declared: set[str] = set()

        def _message_ref(local_name: str) -> str:
            if local_name not in declared:
                declared.add(local_name)
                file_proto.message_type.add(name=local_name)
            return prefix + local_name

        for service_index, (service_name, methods) in enumerate(services):
            service = file_proto.service.add(name=service_name)
            for method_index, entry in enumerate(methods):
                method_name = str(entry["name"])
                input_type = entry.get("input") or _message_ref(f"{method_name}Request")
                output_type = entry.get("output") or _message_ref(f"{method_name}Response")
                method = service.method.add(
                    name=method_name,
                    input_type=str(input_type),
                    output_type=str(output_type),
                )
                if "key" in entry:
                    annotate(method, entry["key"], entry.get("extra", ()))
                if "comment" in entry:
                    location = file_proto.source_code_info.location.add(
                        path=[6, service_index, 2, method_index],
                        span=[0, 0, 0],
                    )
                    location.leading_comments = str(entry["comment"])
        return file_proto

    return _make_proto_file


@pytest.fixture
def make_descriptor_set() -> Callable[..., gen.DescriptorSet]:
    def _make_descriptor_set(
        *files: descriptor_pb2.FileDescriptorProto,
        targets: list[str] | None = None,
    ) -> gen.DescriptorSet:
        all_files = [descriptor_file(), options_file(), *files]
        if targets is None:
            targets = [f.name for f in files]
        return gen.load_descriptor_set(all_files, targets)

    return _make_descriptor_set


@pytest.fixture
def package_desc() -> gen.PackageDesc:
    return gen.PackageDesc(
        request_type="aiogram.types.Update",
        response_type="myapp.routing.Reply",
    )


@pytest.fixture
def extra_package_desc() -> gen.PackageDesc:
    return gen.PackageDesc(
        request_type="aiogram.types.Update",
        response_type="myapp.routing.Reply",
        extra_data_type="myapp.routing.ExtraData",
        new_extra_data_func="myapp.routing.new_extra_data",
    )


@pytest.fixture
def menu_file(
    make_proto_file: Callable[..., descriptor_pb2.FileDescriptorProto],
) -> descriptor_pb2.FileDescriptorProto:
    return make_proto_file(
        "bot/v1/menu.proto",
        "bot.v1",
        [
            (
                "MenuService",
                [
                    {
                        "name": "UpdateCount",
                        "key": "bot",
                        "extra": [("command", "start"), ("callback_query", "start")],
                        "comment": " test comment line1\n test comment line2\n test comment line3\n",
                    },
                    {
                        "name": "ProcessMenu",
                        "key": "bot",
                        "extra": [("callback_query", "menu_.*")],
                    },
                ],
            )
        ],
    )
