"""Route glue generator for annotated protobuf services.

Reads protobuf descriptors (a protoc plugin request or a FileDescriptorSet),
collects every rpc method carrying the route option for one routing key and
renders Python routing glue for it through a Jinja2 template: operation
constants, per-operation extra data, server and codec contracts, dispatch
handlers and a registration function.

Usage:
    protoc --route_out=key=bot,request_model=aiogram.types.Update,response_model=aiogram.methods.TelegramMethod:gen bot/v1/menu.proto
    route-gen --descriptor-set api.pb --key bot --request-model aiogram.types.Update \
        --response-model aiogram.methods.TelegramMethod --output-dir gen
"""

import argparse
import json
import keyword
import re
import sys
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType

import jinja2
from google.protobuf import descriptor_pb2, descriptor_pool, message_factory
from google.protobuf.compiler import plugin_pb2
from google.protobuf.descriptor import Descriptor, FieldDescriptor
from google.protobuf.message import DecodeError

DEFAULT_OPTION_NAME = "sphere.options.options"
METHOD_OPTIONS_NAME = "google.protobuf.MethodOptions"
GENERATOR_NAME = "protoc-gen-route"


# ===--- Config contracts ---=== #


@dataclass(frozen=True)
class PackageDesc:
    """Cross-cutting type references shared by every service of one run.

    Built once from configuration before any file is walked and shared by
    reference by every ServiceDesc of the run. All values are dotted Python
    references such as "aiogram.types.Update"; the generator never looks
    inside them.

    Attributes:
        request_type: Transport-native request type.
        response_type: Transport-native response type.
        extra_data_type: Type of the per-operation metadata value, or None.
        new_extra_data_func: Callable building one metadata value from a
            dict of extras, or None.
    """

    request_type: str
    response_type: str
    extra_data_type: str | None = None
    new_extra_data_func: str | None = None

    @property
    def has_extra_data(self) -> bool:
        return bool(self.extra_data_type and self.new_extra_data_func)


@dataclass(frozen=True)
class GenerateConfig:
    routing_key: str
    package: PackageDesc
    option_name: str = DEFAULT_OPTION_NAME
    template_path: Path | None = None
    suffix: str | None = None

    @property
    def output_suffix(self) -> str:
        if self.suffix is not None:
            return self.suffix
        return f"_{self.routing_key}_route"


@dataclass(frozen=True)
class CliConfig:
    descriptor_set: Path
    files: tuple[str, ...]
    output_dir: Path
    generate: GenerateConfig


VALID_ERROR_CODES = {
    "MISSING_ROUTING_KEY",
    "INVALID_ROUTING_KEY",
    "MISSING_REQUEST_MODEL",
    "MISSING_RESPONSE_MODEL",
    "INVALID_TYPE_REFERENCE",
    "INCOMPLETE_EXTRA_DATA",
    "INVALID_OPTION_NAME",
    "UNKNOWN_PARAMETER",
    "MALFORMED_PARAMETER",
    "PATH_NOT_FOUND",
}
_ROUTING_KEY_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")
_DOTTED_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*$")


class ConfigError(Exception):
    def __init__(self, code: str, message: str, suggestion: str | None = None):
        if code not in VALID_ERROR_CODES:
            raise ValueError(f"Unknown config error code: {code}")
        super().__init__(message)
        self.code = code
        self.message = message
        self.suggestion = suggestion


def format_config_error(err: ConfigError) -> str:
    text = f"Config error [{err.code}]: {err.message}"
    if err.suggestion:
        text += f"\nHint: {err.suggestion}"
    return text


def validate_routing_key(raw: str | None) -> str:
    if not raw:
        raise ConfigError(
            "MISSING_ROUTING_KEY",
            "A routing key is required.",
            "Pass the option key this pass targets, for example key=bot.",
        )
    if not _ROUTING_KEY_RE.match(raw):
        raise ConfigError(
            "INVALID_ROUTING_KEY",
            f"Invalid routing key: {raw}",
            "Routing keys must start with a letter and contain only letters, "
            "digits and underscores.",
        )
    return raw


def validate_type_reference(raw: str, flag: str) -> str:
    if _DOTTED_NAME_RE.match(raw):
        return raw
    raise ConfigError(
        "INVALID_TYPE_REFERENCE",
        f"Invalid type reference for {flag}: {raw}",
        "Use a dotted Python reference such as package.module.Name.",
    )


def validate_option_name(raw: str) -> str:
    if _DOTTED_NAME_RE.match(raw):
        return raw
    raise ConfigError(
        "INVALID_OPTION_NAME",
        f"Invalid option name: {raw}",
        f"Use the full name of the method option extension, e.g. {DEFAULT_OPTION_NAME}.",
    )


def validate_path_exists(path: Path | None, flag: str) -> Path:
    if path is None:
        raise ConfigError(
            "PATH_NOT_FOUND",
            f"{flag} is required: no path provided.",
            f"Pass the path explicitly: {flag} /path/to/resource",
        )
    if path.exists():
        return path
    raise ConfigError(
        "PATH_NOT_FOUND",
        f"Path for {flag} does not exist: {path}",
        "Provide an existing path for this flag.",
    )


def build_generate_config(
    *,
    routing_key: str | None,
    request_model: str | None,
    response_model: str | None,
    extra_data_model: str | None = None,
    extra_data_constructor: str | None = None,
    template_path: Path | None = None,
    option_name: str | None = None,
    suffix: str | None = None,
) -> GenerateConfig:
    """Validate raw settings shared by plugin and CLI mode.

    Raises:
        ConfigError: On the first invalid or missing setting.
    """
    key = validate_routing_key(routing_key)
    if not request_model:
        raise ConfigError(
            "MISSING_REQUEST_MODEL",
            "A request model is required.",
            "Pass the transport-native request type, e.g. request_model=aiogram.types.Update.",
        )
    if not response_model:
        raise ConfigError(
            "MISSING_RESPONSE_MODEL",
            "A response model is required.",
            "Pass the transport-native response type, e.g. response_model=myapp.Reply.",
        )
    if bool(extra_data_model) != bool(extra_data_constructor):
        raise ConfigError(
            "INCOMPLETE_EXTRA_DATA",
            "Extra data model and extra data constructor must be configured together.",
            "Pass both extra_data_model and extra_data_constructor, or neither.",
        )

    package = PackageDesc(
        request_type=validate_type_reference(request_model, "request_model"),
        response_type=validate_type_reference(response_model, "response_model"),
        extra_data_type=(
            validate_type_reference(extra_data_model, "extra_data_model")
            if extra_data_model
            else None
        ),
        new_extra_data_func=(
            validate_type_reference(extra_data_constructor, "extra_data_constructor")
            if extra_data_constructor
            else None
        ),
    )
    if template_path is not None:
        validate_path_exists(template_path, "template")
    return GenerateConfig(
        routing_key=key,
        package=package,
        option_name=validate_option_name(option_name or DEFAULT_OPTION_NAME),
        template_path=template_path,
        suffix=suffix,
    )


PLUGIN_PARAMETERS = {
    "key",
    "request_model",
    "response_model",
    "extra_data_model",
    "extra_data_constructor",
    "template",
    "option",
    "suffix",
}


def parse_plugin_parameter(parameter: str) -> GenerateConfig:
    """Parse the protoc parameter string (``--route_out=<params>:<dir>``).

    The string is a comma separated list of ``name=value`` entries. Empty
    entries are ignored; a name may appear only once.

    Args:
        parameter: Raw CodeGeneratorRequest.parameter.

    Returns:
        Validated GenerateConfig.

    Raises:
        ConfigError: MALFORMED_PARAMETER, UNKNOWN_PARAMETER or any
            validation code from build_generate_config.
    """
    values: dict[str, str] = {}
    for entry in parameter.split(","):
        entry = entry.strip()
        if not entry:
            continue
        name, sep, value = entry.partition("=")
        name = name.strip()
        if not sep:
            raise ConfigError(
                "MALFORMED_PARAMETER",
                f"Malformed plugin parameter: {entry}",
                "Parameters are comma separated name=value pairs.",
            )
        if name not in PLUGIN_PARAMETERS:
            raise ConfigError(
                "UNKNOWN_PARAMETER",
                f"Unknown plugin parameter: {name}",
                "Use one of: " + ", ".join(sorted(PLUGIN_PARAMETERS)) + ".",
            )
        if name in values:
            raise ConfigError(
                "MALFORMED_PARAMETER",
                f"Plugin parameter given more than once: {name}",
                "Pass each parameter once.",
            )
        values[name] = value.strip()

    template = values.get("template")
    return build_generate_config(
        routing_key=values.get("key"),
        request_model=values.get("request_model"),
        response_model=values.get("response_model"),
        extra_data_model=values.get("extra_data_model") or None,
        extra_data_constructor=values.get("extra_data_constructor") or None,
        template_path=Path(template) if template else None,
        option_name=values.get("option") or None,
        suffix=values.get("suffix"),
    )


def build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Generate route glue from annotated protobuf services"
    )

    parser.add_argument("--descriptor-set", type=Path, default=None)
    parser.add_argument("--file", action="append", default=None)
    parser.add_argument("--key", type=str, default=None)
    parser.add_argument("--request-model", type=str, default=None)
    parser.add_argument("--response-model", type=str, default=None)
    parser.add_argument("--extra-data-model", type=str, default=None)
    parser.add_argument("--extra-data-constructor", type=str, default=None)
    parser.add_argument("--template", type=Path, default=None)
    parser.add_argument("--option", type=str, default=DEFAULT_OPTION_NAME)
    parser.add_argument("--suffix", type=str, default=None)
    parser.add_argument("--output-dir", type=Path, default=Path("."))

    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = build_argument_parser()
    return parser.parse_args(argv)


def validate_config(args: argparse.Namespace) -> CliConfig:
    descriptor_set = validate_path_exists(args.descriptor_set, "--descriptor-set")
    generate = build_generate_config(
        routing_key=args.key,
        request_model=args.request_model,
        response_model=args.response_model,
        extra_data_model=args.extra_data_model,
        extra_data_constructor=args.extra_data_constructor,
        template_path=args.template,
        option_name=args.option,
        suffix=args.suffix,
    )
    return CliConfig(
        descriptor_set=descriptor_set,
        files=tuple(args.file or ()),
        output_dir=args.output_dir,
        generate=generate,
    )


def build_config(argv: list[str] | None = None) -> CliConfig:
    args = parse_args(argv)
    return validate_config(args)


# ===--- Route model ---=== #


@dataclass(frozen=True)
class MethodDesc:
    """One rpc method carrying the route option for the pass's routing key.

    Attributes:
        name: Method name as declared, e.g. "UpdateCount".
        original_name: Service and method name, e.g. "MenuServiceUpdateCount".
        dedup_number: 0 unless an earlier method of the same pass produced
            the same original_name; then 1, 2, ...
        request_type: Input message name local to its file, e.g.
            "UpdateCountRequest" (or "Outer.Inner" for nested messages).
        reply_type: Output message name, same convention.
        request_module: Python module protoc emits for the input message's
            file, e.g. "bot.v1.menu_pb2".
        reply_module: Same for the output message.
        comment: Leading comment of the method, verbatim.
        extra: Annotation extras as a read-only mapping.
    """

    name: str
    original_name: str
    dedup_number: int
    request_type: str
    reply_type: str
    request_module: str
    reply_module: str
    comment: str
    extra: Mapping[str, str]

    @property
    def unique_name(self) -> str:
        if self.dedup_number:
            return f"{self.original_name}{self.dedup_number}"
        return self.original_name

    @property
    def request_ref(self) -> str:
        """Input message as referenced in generated code."""
        return f"{module_alias(self.request_module)}.{self.request_type}"

    @property
    def reply_ref(self) -> str:
        return f"{module_alias(self.reply_module)}.{self.reply_type}"


@dataclass(frozen=True)
class ServiceDesc:
    """Route group: the methods of one service that matched one routing key.

    method_set is derived from methods in __post_init__ and is not an init
    argument. Use dataclasses.replace to change methods; the copy gets a
    fresh method_set. dedup_number separates services of one file whose
    names fold to the same identifier, e.g. "HTTPService" and "HttpService".
    """

    options_key: str
    service_type: str
    service_name: str
    methods: tuple[MethodDesc, ...]
    package_info: PackageDesc
    dedup_number: int = 0
    method_set: Mapping[str, MethodDesc] = field(
        init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        methods = tuple(self.methods)
        object.__setattr__(self, "methods", methods)
        object.__setattr__(
            self, "method_set", MappingProxyType({m.name: m for m in methods})
        )

    @property
    def unique_type(self) -> str:
        if self.dedup_number:
            return f"{self.service_type}{self.dedup_number}"
        return self.service_type


@dataclass(frozen=True)
class RouteFile:
    """Matched services of one .proto file, in declaration order."""

    proto_name: str
    services: tuple[ServiceDesc, ...]


class DescriptorError(Exception):
    """Structurally invalid descriptor input. Aborts the run."""

    def __init__(
        self,
        message: str,
        *,
        file: str | None = None,
        service: str | None = None,
        method: str | None = None,
    ):
        location = " / ".join(part for part in (file, service, method) if part)
        super().__init__(f"{location}: {message}" if location else message)
        self.message = message
        self.file = file
        self.service = service
        self.method = method


class RenderError(Exception):
    pass


# ===--- Descriptor loading ---=== #


@dataclass(frozen=True)
class DescriptorSet:
    """Parsed .proto files plus a descriptor pool resolving their symbols.

    Read-only once built; independent passes may share one instance.

    Attributes:
        files: Every file, dependencies before dependents.
        targets: Names of the files to generate for, in generation order.
        pool: DescriptorPool holding all files.
    """

    files: tuple[descriptor_pb2.FileDescriptorProto, ...]
    targets: tuple[str, ...]
    pool: descriptor_pool.DescriptorPool

    def target_files(self) -> list[descriptor_pb2.FileDescriptorProto]:
        by_name = {f.name: f for f in self.files}
        return [by_name[name] for name in self.targets]


def load_descriptor_set(
    files: Iterable[descriptor_pb2.FileDescriptorProto],
    targets: Iterable[str] | None = None,
) -> DescriptorSet:
    """Build a DescriptorSet, resolving every type reference up front.

    Each file is added to a fresh DescriptorPool, which checks imports and
    resolves every message, enum and extension reference.

    Args:
        files: File descriptors in dependency order.
        targets: Files to generate for. None selects every file.

    Returns:
        DescriptorSet over the given files.

    Raises:
        DescriptorError: A file fails to build (missing dependency,
            unresolved reference, duplicate symbol) or a target is not
            among the files.
    """
    files = tuple(files)
    pool = descriptor_pool.DescriptorPool()
    for file_proto in files:
        try:
            pool.AddSerializedFile(file_proto.SerializeToString())
        except (TypeError, KeyError, ValueError) as err:
            raise DescriptorError(
                f"cannot build descriptors: {err}", file=file_proto.name
            ) from err

    if targets is None:
        target_names = tuple(f.name for f in files)
    else:
        target_names = tuple(targets)
        known = {f.name for f in files}
        missing = [name for name in target_names if name not in known]
        if missing:
            raise DescriptorError(
                "file to generate not found in descriptor set: " + ", ".join(missing)
            )
    return DescriptorSet(files=files, targets=target_names, pool=pool)


def descriptor_set_from_request(
    request: plugin_pb2.CodeGeneratorRequest,
) -> DescriptorSet:
    return load_descriptor_set(request.proto_file, request.file_to_generate)


def read_descriptor_set(
    path: Path, targets: Sequence[str] = ()
) -> DescriptorSet:
    """Load a binary FileDescriptorSet written by ``protoc -o``.

    The set must be produced with --include_imports so that every
    dependency is present, and with --include_source_info to carry method
    comments.

    Raises:
        OSError: File not readable.
        DecodeError: File is not a serialized FileDescriptorSet.
        DescriptorError: Propagated from load_descriptor_set.
    """
    file_set = descriptor_pb2.FileDescriptorSet.FromString(Path(path).read_bytes())
    return load_descriptor_set(file_set.file, targets or None)


# ===--- Annotation extraction ---=== #


@dataclass(frozen=True)
class RouteOption:
    """The route option extension as resolved in one descriptor pool."""

    extension: FieldDescriptor
    options_class: type


@dataclass(frozen=True)
class RouteAnnotation:
    key: str
    extra: tuple[tuple[str, str], ...]


def _has_string_field(message_type: Descriptor, name: str) -> bool:
    found = message_type.fields_by_name.get(name)
    return (
        found is not None
        and found.type == FieldDescriptor.TYPE_STRING
        and not found.is_repeated
    )


def _has_route_fields(options_type: Descriptor) -> bool:
    if not _has_string_field(options_type, "key"):
        return False
    extra = options_type.fields_by_name.get("extra")
    if (
        extra is None
        or extra.type != FieldDescriptor.TYPE_MESSAGE
        or not extra.is_repeated
    ):
        return False
    return _has_string_field(extra.message_type, "key") and _has_string_field(
        extra.message_type, "value"
    )


def resolve_route_option(
    pool: descriptor_pool.DescriptorPool, option_name: str = DEFAULT_OPTION_NAME
) -> RouteOption | None:
    """Find the route option extension by full name.

    The extension must be a singular message extending
    google.protobuf.MethodOptions whose message has a string ``key`` and a
    repeated ``extra`` of key/value messages.

    Returns:
        RouteOption, or None when the pool has no usable extension of that
        name. No method can match in that case.
    """
    try:
        extension = pool.FindExtensionByName(option_name)
    except KeyError:
        return None
    if extension.containing_type.full_name != METHOD_OPTIONS_NAME:
        return None
    if extension.is_repeated:
        return None
    if extension.type != FieldDescriptor.TYPE_MESSAGE:
        return None
    if not _has_route_fields(extension.message_type):
        return None
    return RouteOption(
        extension=extension,
        options_class=message_factory.GetMessageClass(extension.containing_type),
    )


def extract_route_annotation(
    method: descriptor_pb2.MethodDescriptorProto, route_option: RouteOption | None
) -> RouteAnnotation | None:
    """Read the route option attached to one method.

    Returns None when the method has no options, the option is absent, the
    option bytes cannot be decoded, or its key is empty. Extras keep their
    declaration order.
    """
    if route_option is None or not method.HasField("options"):
        return None
    try:
        options = route_option.options_class.FromString(
            method.options.SerializeToString()
        )
    except DecodeError:
        return None
    if not options.HasExtension(route_option.extension):
        return None

    value = options.Extensions[route_option.extension]
    if not value.key:
        return None
    return RouteAnnotation(
        key=value.key,
        extra=tuple((pair.key, pair.value) for pair in value.extra),
    )


def fold_extras(pairs: Iterable[tuple[str, str]]) -> Mapping[str, str]:
    # Duplicate keys: the last value wins, the first position is kept.
    extra: dict[str, str] = {}
    for key, value in pairs:
        extra[key] = value
    return MappingProxyType(extra)


# ===--- Name deduplication ---=== #


class NameDeduplicator:
    """Per-pass counter handing out collision numbers for generated names.

    Names are compared in their snake_case form, the form generated
    identifiers are derived from, so "HTTPServiceGet" and "HttpServiceGet"
    collide. The first request for a name gets 0, later requests get 1, 2,
    3, ... A number is skipped when the numbered name is already taken, so
    "MenuServiceStart" numbered 1 never meets a literal "MenuServiceStart1".
    Create one instance per generation pass.
    """

    def __init__(self) -> None:
        self._counts: dict[str, int] = {}
        self._taken: set[str] = set()

    def assign(self, candidate: str) -> tuple[str, int]:
        base = to_snake_case(candidate)
        number = self._counts.get(base, 0)
        while _numbered(base, number) in self._taken:
            number += 1
        self._counts[base] = number + 1
        self._taken.add(_numbered(base, number))
        return candidate, number


def _numbered(name: str, number: int) -> str:
    return f"{name}{number}" if number else name


# ===--- Model building ---=== #


def python_module_name(proto_name: str) -> str:
    """Module protoc's Python generator emits for a .proto file.

    "bot/v1/menu.proto" -> "bot.v1.menu_pb2"
    """
    stem = proto_name.removesuffix(".proto").replace("-", "_")
    return stem.replace("/", ".") + "_pb2"


def collect_method_comments(
    file_proto: descriptor_pb2.FileDescriptorProto,
) -> dict[tuple[int, int], str]:
    """Map (service index, method index) to the method's leading comment."""
    service_field = descriptor_pb2.FileDescriptorProto.SERVICE_FIELD_NUMBER
    method_field = descriptor_pb2.ServiceDescriptorProto.METHOD_FIELD_NUMBER
    comments: dict[tuple[int, int], str] = {}
    for location in file_proto.source_code_info.location:
        path = tuple(location.path)
        if len(path) == 4 and path[0] == service_field and path[2] == method_field:
            comments[(path[1], path[3])] = location.leading_comments
    return comments


def _local_message_name(message_type: Descriptor) -> str:
    package = message_type.file.package
    if package:
        return message_type.full_name[len(package) + 1 :]
    return message_type.full_name


def _resolve_message(
    pool: descriptor_pool.DescriptorPool,
    type_name: str,
    *,
    file: str,
    service: str,
    method: str,
) -> Descriptor:
    try:
        return pool.FindMessageTypeByName(type_name.lstrip("."))
    except KeyError as err:
        raise DescriptorError(
            f"unresolved message type {type_name}",
            file=file,
            service=service,
            method=method,
        ) from err


def build_file_services(
    file_proto: descriptor_pb2.FileDescriptorProto,
    pool: descriptor_pool.DescriptorPool,
    route_option: RouteOption | None,
    routing_key: str,
    package: PackageDesc,
    deduplicator: NameDeduplicator,
) -> list[ServiceDesc]:
    """Build the route groups of one file for one routing key.

    Methods without a route option, or with a different key, are skipped.
    Services left with no method produce nothing.

    Raises:
        DescriptorError: A matched method's input or output type does not
            resolve in the pool.
    """
    comments = collect_method_comments(file_proto)
    services: list[ServiceDesc] = []
    # Service level names live in one output module, so they are numbered per file.
    service_names = NameDeduplicator()

    for service_index, service in enumerate(file_proto.service):
        if file_proto.package:
            service_name = f"{file_proto.package}.{service.name}"
        else:
            service_name = service.name

        methods: list[MethodDesc] = []
        for method_index, method in enumerate(service.method):
            annotation = extract_route_annotation(method, route_option)
            if annotation is None or annotation.key != routing_key:
                continue

            location = {"file": file_proto.name, "service": service_name, "method": method.name}
            request = _resolve_message(pool, method.input_type, **location)
            reply = _resolve_message(pool, method.output_type, **location)
            original_name, dedup_number = deduplicator.assign(service.name + method.name)
            methods.append(
                MethodDesc(
                    name=method.name,
                    original_name=original_name,
                    dedup_number=dedup_number,
                    request_type=_local_message_name(request),
                    reply_type=_local_message_name(reply),
                    request_module=python_module_name(request.file.name),
                    reply_module=python_module_name(reply.file.name),
                    comment=comments.get((service_index, method_index), ""),
                    extra=fold_extras(annotation.extra),
                )
            )

        if methods:
            _, service_number = service_names.assign(service.name)
            services.append(
                ServiceDesc(
                    options_key=routing_key,
                    service_type=service.name,
                    service_name=service_name,
                    methods=tuple(methods),
                    package_info=package,
                    dedup_number=service_number,
                )
            )
    return services


def build_route_files(
    descriptor_set: DescriptorSet,
    routing_key: str,
    package: PackageDesc,
    *,
    option_name: str = DEFAULT_OPTION_NAME,
    deduplicator: NameDeduplicator | None = None,
) -> list[RouteFile]:
    """Walk every target file and build its route groups for one key.

    Files, services and methods keep declaration order. Files without a
    matching service are left out. The result depends only on the inputs.

    Args:
        descriptor_set: Loaded descriptors; not modified.
        routing_key: Option key this pass targets, e.g. "bot".
        package: Shared type references attached to every ServiceDesc.
        option_name: Full name of the route option extension.
        deduplicator: Collision counter for this pass. A fresh one is used
            when omitted; never share one between passes.

    Returns:
        One RouteFile per file with at least one matching service.

    Raises:
        DescriptorError: Propagated from build_file_services.
    """
    if deduplicator is None:
        deduplicator = NameDeduplicator()
    route_option = resolve_route_option(descriptor_set.pool, option_name)

    route_files: list[RouteFile] = []
    for file_proto in descriptor_set.target_files():
        services = build_file_services(
            file_proto,
            descriptor_set.pool,
            route_option,
            routing_key,
            package,
            deduplicator,
        )
        if services:
            route_files.append(
                RouteFile(proto_name=file_proto.name, services=tuple(services))
            )
    return route_files


def build_services(
    descriptor_set: DescriptorSet,
    routing_key: str,
    package: PackageDesc,
    *,
    option_name: str = DEFAULT_OPTION_NAME,
    deduplicator: NameDeduplicator | None = None,
) -> list[ServiceDesc]:
    route_files = build_route_files(
        descriptor_set,
        routing_key,
        package,
        option_name=option_name,
        deduplicator=deduplicator,
    )
    return [service for route_file in route_files for service in route_file.services]


# ===--- Template rendering ---=== #


_CAMEL_BOUNDARY_RE = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])")


def to_snake_case(name: str) -> str:
    return _CAMEL_BOUNDARY_RE.sub("_", name).lower()


def safe_identifier(name: str) -> str:
    if keyword.iskeyword(name) or keyword.issoftkeyword(name):
        return name + "_"
    return name


def snake_case_filter(name: str) -> str:
    return safe_identifier(to_snake_case(name))


def constant_case_filter(name: str) -> str:
    return to_snake_case(name).upper()


def pascal_case_filter(name: str) -> str:
    return "".join(part[:1].upper() + part[1:] for part in name.split("_"))


def type_name_filter(reference: str) -> str:
    return reference.rpartition(".")[2]


def py_literal_filter(value: str) -> str:
    # A JSON string is also a valid Python string literal.
    return json.dumps(value, ensure_ascii=False)


def comment_filter(text: str, indent: int = 0) -> str:
    pad = " " * indent
    return "\n".join(f"{pad}#{line}" for line in text.rstrip("\n").split("\n"))


PRELUDE_NAMES = frozenset({"annotations", "abc", "Awaitable", "Callable", "_message"})


def module_alias(module: str) -> str:
    """Name a message module is imported under, grpc style.

    "bot.v1.menu_pb2" -> "bot_dot_v1_dot_menu__pb2"
    """
    return module.replace("_", "__").replace(".", "_dot_")


def _configured_references(package: PackageDesc) -> list[str]:
    references = [package.request_type, package.response_type]
    if package.has_extra_data:
        references.append(package.extra_data_type)
        references.append(package.new_extra_data_func)
    return references


def bind_type_references(package: PackageDesc) -> dict[str, str]:
    """Map each configured reference to its name in generated code.

    Dotless references (builtins) keep their name. A reference whose last
    component is already bound, by the prelude imports or by an earlier
    reference, is imported under ``<Name>_<n>``.
    """
    references = _configured_references(package)
    bound: dict[str, str] = {}
    taken = set(PRELUDE_NAMES)
    for reference in references:
        if "." not in reference:
            bound[reference] = reference
            taken.add(reference)

    for reference in references:
        if reference in bound:
            continue
        name = reference.rpartition(".")[2]
        local = name
        number = 1
        while local in taken:
            local = f"{name}_{number}"
            number += 1
        taken.add(local)
        bound[reference] = local
    return bound


DEFAULT_TEMPLATE = '''\
{% set key = service.options_key %}
{% set server_class = service.unique_type ~ (key|pascal_case) ~ "Server" %}
{% set codec_class = service.unique_type ~ (key|pascal_case) ~ "Codec" %}
{% set prefix = (service.unique_type|snake_case) ~ "_" ~ (key|snake_case) %}
{% set handler_type = "Callable[[" ~ request_model ~ "], Awaitable[" ~ response_model ~ "]]" %}
{% macro operation(method) %}OPERATION_{{ service.options_key|constant_case }}_{{ method.unique_name|constant_case }}{% endmacro %}
{% macro extra_data(method) %}EXTRA_DATA_{{ service.options_key|constant_case }}_{{ method.unique_name|constant_case }}{% endmacro %}
{% macro handler(method) %}_{{ method.unique_name|snake_case }}_{{ service.options_key|snake_case }}_handler{% endmacro %}
# ===--- {{ service.service_name }} ({{ key }}) ---=== #

{% for method in service.methods %}
{{ operation(method) }} = "/{{ service.service_name }}/{{ method.name }}"
{% endfor %}
{% if package.has_extra_data %}

{% for method in service.methods %}
{{ extra_data(method) }} = {{ extra_data_constructor }}(
    {
{% for name, value in method.extra.items() %}
        {{ name|py_literal }}: {{ value|py_literal }},
{% endfor %}
    }
)
{% endfor %}

_{{ prefix|upper }}_EXTRA_DATA: dict[str, {{ extra_data_model }}] = {
{% for method in service.methods %}
    {{ operation(method) }}: {{ extra_data(method) }},
{% endfor %}
}


def get_{{ prefix }}_extra_data(operation: str) -> {{ extra_data_model }} | None:
    return _{{ prefix|upper }}_EXTRA_DATA.get(operation)
{% endif %}


def get_{{ prefix }}_operations() -> list[str]:
    return [
{% for method in service.methods %}
        {{ operation(method) }},
{% endfor %}
    ]


class {{ server_class }}(abc.ABC):
{% for method in service.methods %}
{% if method.comment %}
{{ method.comment|comment(4) }}
{% endif %}
    @abc.abstractmethod
    async def {{ method.name|snake_case }}(
        self, request: {{ method.request_ref }}
    ) -> {{ method.reply_ref }}:
        raise NotImplementedError
{% if not loop.last %}

{% endif %}
{% endfor %}


class {{ codec_class }}(abc.ABC):
    @abc.abstractmethod
    async def decode(self, request: {{ request_model }}, target: _message.Message) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    async def encode(self, request: {{ request_model }}, reply: _message.Message) -> {{ response_model }}:
        raise NotImplementedError
{% for method in service.methods %}


def {{ handler(method) }}(
    server: {{ server_class }}, codec: {{ codec_class }}
) -> {{ handler_type }}:
    async def handler(request: {{ request_model }}) -> {{ response_model }}:
        typed_request = {{ method.request_ref }}()
        await codec.decode(request, typed_request)
        reply = await server.{{ method.name|snake_case }}(typed_request)
        return await codec.encode(request, reply)

    return handler
{% endfor %}


def register_{{ prefix }}_server(
    server: {{ server_class }}, codec: {{ codec_class }}
) -> dict[str, {{ handler_type }}]:
    return {
{% for method in service.methods %}
        {{ operation(method) }}: {{ handler(method) }}(server, codec),
{% endfor %}
    }
'''
"""Built-in per-service template. Rendered with ``service`` (ServiceDesc),
``package`` (its PackageDesc) and the names configured references are bound
to: ``request_model``, ``response_model``, ``extra_data_model`` and
``extra_data_constructor`` (None without extra data). Message types are
reached through ``method.request_ref`` and ``method.reply_ref``. Override
with the template setting."""


def build_template_environment() -> jinja2.Environment:
    environment = jinja2.Environment(
        autoescape=False,
        undefined=jinja2.StrictUndefined,
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
    )
    environment.filters.update(
        snake_case=snake_case_filter,
        constant_case=constant_case_filter,
        pascal_case=pascal_case_filter,
        type_name=type_name_filter,
        py_literal=py_literal_filter,
        comment=comment_filter,
    )
    return environment


def load_template(
    path: Path | None = None, environment: jinja2.Environment | None = None
) -> jinja2.Template:
    """Compile the built-in template, or the template file at path.

    Raises:
        RenderError: Template file unreadable or not valid Jinja2.
    """
    if environment is None:
        environment = build_template_environment()
    if path is None:
        source = DEFAULT_TEMPLATE
        label = "<default>"
    else:
        label = str(path)
        try:
            source = Path(path).read_text(encoding="utf-8")
        except OSError as err:
            raise RenderError(f"cannot read template {label}: {err}") from err

    try:
        return environment.from_string(source)
    except jinja2.TemplateSyntaxError as err:
        raise RenderError(
            f"invalid template {label}: line {err.lineno}: {err.message}"
        ) from err


def render_service(template: jinja2.Template, service: ServiceDesc) -> str:
    """Render one route group.

    The model is handed over as is: method_set is already consistent and
    names are already deduplicated.

    Raises:
        RenderError: The template fails on this service.
    """
    package = service.package_info
    names = bind_type_references(package)
    try:
        return template.render(
            service=service,
            package=package,
            request_model=names[package.request_type],
            response_model=names[package.response_type],
            extra_data_model=names.get(package.extra_data_type or ""),
            extra_data_constructor=names.get(package.new_extra_data_func or ""),
        )
    except (jinja2.TemplateError, TypeError) as err:
        raise RenderError(
            f"cannot render {service.service_name} for key {service.options_key}: {err}"
        ) from err


# ===--- Output assembly ---=== #


@dataclass(frozen=True)
class ExternalImport:
    """One import line of a generated file.

    Either ``from <module> import <names>`` or, with alias set and no
    names, ``import <module> as <alias>``.

    Attributes:
        module: Fully qualified module path, e.g. "bot.v1.menu_pb2".
        names: Names to import, sorted; an entry may read "Name as Alias".
        alias: Whole-module alias, e.g. "bot_dot_v1_dot_menu__pb2".
    """

    module: str
    names: tuple[str, ...]
    alias: str | None = None


@dataclass(frozen=True)
class GeneratedFile:
    """Rendered output for one matched .proto file.

    Attributes:
        name: Output path relative to the output root,
            e.g. "bot/v1/menu_bot_route.py".
        content: Complete module source, newline terminated.
        route_file: The route model the content was rendered from.
    """

    name: str
    content: str
    route_file: RouteFile


PRELUDE_IMPORT_LINES: tuple[str, ...] = (
    "from __future__ import annotations",
    "",
    "import abc",
    "from collections.abc import Awaitable, Callable",
    "",
    "from google.protobuf import message as _message",
)

_HEADER_BORDER: str = "# x-------------------------------------------x #"


def format_file_header(config: GenerateConfig, proto_name: str) -> list[str]:
    """Return the boxed comment opening every generated file.

    Output format:
        # x-------------------------------------------x #
        # | Code generated by protoc-gen-route. DO NOT EDIT.
        # | Source: bot/v1/menu.proto
        # | Routing key: bot
        # x-------------------------------------------x #
    """
    return [
        _HEADER_BORDER,
        f"# | Code generated by {GENERATOR_NAME}. DO NOT EDIT.",
        f"# | Source: {proto_name}",
        f"# | Routing key: {config.routing_key}",
        _HEADER_BORDER,
    ]


def build_route_imports(
    package: PackageDesc, route_file: RouteFile
) -> tuple[ExternalImport, ...]:
    """Collect the imports the rendered services refer to.

    Configured references come first, grouped by module in first-seen order
    with names sorted; names clashing with the prelude or with each other are
    aliased as bind_type_references decides. References without a module
    part (builtins) need no import. Message modules follow in method order,
    each imported whole under its module_alias, so message names never
    shadow configured ones.
    """
    bound = bind_type_references(package)
    grouped: dict[str, set[str]] = {}
    for reference in _configured_references(package):
        module, _, name = reference.rpartition(".")
        if not module:
            continue
        local = bound[reference]
        grouped.setdefault(module, set()).add(
            name if local == name else f"{name} as {local}"
        )

    imports = [
        ExternalImport(module=module, names=tuple(sorted(names)))
        for module, names in grouped.items()
    ]

    message_modules: dict[str, None] = {}
    for service in route_file.services:
        for method in service.methods:
            message_modules.setdefault(method.request_module)
            message_modules.setdefault(method.reply_module)
    imports.extend(
        ExternalImport(module=module, names=(), alias=module_alias(module))
        for module in message_modules
    )
    return tuple(imports)


def format_import_block(external_imports: tuple[ExternalImport, ...]) -> list[str]:
    for imp in external_imports:
        if not imp.names and imp.alias is None:
            raise ValueError(
                f"ExternalImport for module '{imp.module}' has empty names tuple"
            )
    return [
        f"import {imp.module} as {imp.alias}"
        if imp.alias is not None
        else f"from {imp.module} import {', '.join(imp.names)}"
        for imp in external_imports
    ]


def assemble_route_source(
    config: GenerateConfig, route_file: RouteFile, rendered_services: Sequence[str]
) -> str:
    """Assemble a complete generated module.

    File structure:
        <header_comment_block>
                                    <- blank line
        <prelude imports>
                                    <- blank line
        <configured and message imports>
                                    <- two blank lines
        <rendered service>          <- repeated, two blank lines apart
                                    <- trailing newline
    """
    parts: list[str] = list(format_file_header(config, route_file.proto_name))
    parts.append("")
    parts.extend(PRELUDE_IMPORT_LINES)

    imports = build_route_imports(config.package, route_file)
    if imports:
        parts.append("")
        parts.extend(format_import_block(imports))

    source = "\n".join(parts) + "\n"
    for rendered in rendered_services:
        source += "\n\n" + rendered.strip("\n") + "\n"
    return source


def output_filename(proto_name: str, config: GenerateConfig) -> str:
    """Output path for a .proto file: "bot/v1/menu.proto" -> "bot/v1/menu_bot_route.py"."""
    stem = proto_name.removesuffix(".proto")
    directory, _, base = stem.rpartition("/")
    filename = base.replace("-", "_") + config.output_suffix + ".py"
    return f"{directory}/{filename}" if directory else filename


def warn(message: str) -> None:
    print(f"{GENERATOR_NAME}: warning: {message}", file=sys.stderr)


def run_pass(descriptor_set: DescriptorSet, config: GenerateConfig) -> list[GeneratedFile]:
    """Run one generation pass for one routing key.

    Every file is rendered in memory before anything is returned, so a
    failure leaves nothing half emitted. Uses its own NameDeduplicator.

    Args:
        descriptor_set: Loaded descriptors, shared read-only.
        config: Validated pass configuration.

    Returns:
        One GeneratedFile per .proto file with matching services.

    Raises:
        DescriptorError: Unresolvable message reference.
        RenderError: Template missing, malformed, or failing on a service.
    """
    template = load_template(config.template_path)
    if resolve_route_option(descriptor_set.pool, config.option_name) is None:
        warn(f"option {config.option_name} is not defined in the input; nothing to route")

    route_files = build_route_files(
        descriptor_set,
        config.routing_key,
        config.package,
        option_name=config.option_name,
        deduplicator=NameDeduplicator(),
    )

    generated: list[GeneratedFile] = []
    for route_file in route_files:
        rendered = [render_service(template, service) for service in route_file.services]
        generated.append(
            GeneratedFile(
                name=output_filename(route_file.proto_name, config),
                content=assemble_route_source(config, route_file, rendered),
                route_file=route_file,
            )
        )
    return generated


# ===--- Plugin mode ---=== #


def run_plugin(
    request: plugin_pb2.CodeGeneratorRequest,
) -> plugin_pb2.CodeGeneratorResponse:
    """Answer one protoc request.

    Fatal errors are reported through response.error with no files, which
    makes protoc fail.
    """
    response = plugin_pb2.CodeGeneratorResponse(
        supported_features=plugin_pb2.CodeGeneratorResponse.FEATURE_PROTO3_OPTIONAL
    )
    try:
        config = parse_plugin_parameter(request.parameter)
        descriptor_set = descriptor_set_from_request(request)
        generated = run_pass(descriptor_set, config)
    except ConfigError as err:
        response.error = format_config_error(err)
        return response
    except (DescriptorError, RenderError) as err:
        response.error = str(err)
        return response

    for item in generated:
        response.file.add(name=item.name, content=item.content)
    return response


def plugin_main() -> None:
    request = plugin_pb2.CodeGeneratorRequest.FromString(sys.stdin.buffer.read())
    response = run_plugin(request)
    sys.stdout.buffer.write(response.SerializeToString())


# ===--- Writer ---=== #


@dataclass(frozen=True)
class FileWriteResult:
    """Result of writing one generated file.

    Attributes:
        filename: Output name relative to the output directory.
        path: Absolute path of the written file.
        line_count: Number of newline characters in the written content.
        byte_count: Number of bytes written (UTF-8 encoded).
    """

    filename: str
    path: Path
    line_count: int
    byte_count: int


def write_generated_file(output_dir: Path, generated: GeneratedFile) -> FileWriteResult:
    """Write one generated file below output_dir, creating directories.

    Raises:
        OSError: Propagated directly if the filesystem write fails.
    """
    file_path = Path(output_dir) / generated.name
    file_path.parent.mkdir(parents=True, exist_ok=True)
    file_path.write_text(generated.content, encoding="utf-8")
    resolved = file_path.resolve()
    return FileWriteResult(
        filename=generated.name,
        path=resolved,
        line_count=generated.content.count("\n"),
        byte_count=len(resolved.read_bytes()),
    )


def write_generated_files(
    output_dir: Path, generated: Sequence[GeneratedFile]
) -> tuple[FileWriteResult, ...]:
    return tuple(write_generated_file(output_dir, item) for item in generated)


# ===--- Summary report ---=== #


@dataclass(frozen=True)
class GenerationSummary:
    """Data for the post-generation console report.

    Attributes:
        routing_key: Key of the pass.
        source_label: Descriptor set path as given.
        output_dir: Output directory as given.
        service_count: Route groups rendered across all files.
        method_count: Methods rendered across all files.
        files: Write results in write order.
    """

    routing_key: str
    source_label: str
    output_dir: str
    service_count: int
    method_count: int
    files: tuple[FileWriteResult, ...]


def build_generation_summary(
    config: CliConfig,
    generated: Sequence[GeneratedFile],
    files: tuple[FileWriteResult, ...],
) -> GenerationSummary:
    services = [s for item in generated for s in item.route_file.services]
    return GenerationSummary(
        routing_key=config.generate.routing_key,
        source_label=str(config.descriptor_set),
        output_dir=str(config.output_dir),
        service_count=len(services),
        method_count=sum(len(s.methods) for s in services),
        files=files,
    )


def format_generation_summary(summary: GenerationSummary) -> str:
    """Render a GenerationSummary as a multi-line console string.

    Returns a string with exactly one trailing newline.
    """
    lines: list[str] = []
    lines.append(f'Routes generated for key "{summary.routing_key}":')
    lines.append("")
    lines.append(f"  Source:     {summary.source_label}")
    lines.append(f"  Output:     {summary.output_dir}")
    lines.append(f"  Services:   {summary.service_count:>6}")
    lines.append(f"  Methods:    {summary.method_count:>6}")
    lines.append("")

    if not summary.files:
        lines.append("  No annotated methods matched; nothing written.")
        lines.append("")
        return "\n".join(lines)

    lines.append("  Files written:")
    for file_result in summary.files:
        line_str = f"{file_result.line_count:>6,} lines"
        lines.append(f"    {file_result.filename:<36} {line_str}")

    total_lines = sum(f.line_count for f in summary.files)
    lines.append("")
    lines.append(f"  Total: {total_lines:,} lines across {len(summary.files)} files")
    lines.append("")

    return "\n".join(lines)


def print_generation_summary(summary: GenerationSummary) -> None:
    print(format_generation_summary(summary), end="")


# ===--- Main generation ---=== #


def run_generate(config: CliConfig) -> tuple[FileWriteResult, ...]:
    """Execute one CLI pass: read, build, render, write, report.

    Raises:
        OSError: Descriptor set unreadable or filesystem write failure.
        DecodeError: Descriptor set is not a FileDescriptorSet.
        DescriptorError: Structurally invalid descriptors.
        RenderError: Template failure.
    """
    print(f"Reading: {config.descriptor_set}")
    descriptor_set = read_descriptor_set(config.descriptor_set, config.files)
    print(
        f"  Descriptors: {len(descriptor_set.files)} files, "
        f"{len(descriptor_set.targets)} to generate"
    )

    generated = run_pass(descriptor_set, config.generate)
    files = write_generated_files(config.output_dir, generated)
    print(f"  Written: {len(files)} files to {config.output_dir}")

    print_generation_summary(build_generation_summary(config, generated, files))
    return files


def main(argv: list[str] | None = None):
    try:
        config = build_config(argv)
    except ConfigError as err:
        print(format_config_error(err))
        raise SystemExit(1) from err

    try:
        run_generate(config)
    except (OSError, DecodeError, DescriptorError) as err:
        print(f"Error: {err}")
        raise SystemExit(1) from err
    except RenderError as err:
        print(f"Template error: {err}")
        raise SystemExit(1) from err


if __name__ == "__main__":
    main()
