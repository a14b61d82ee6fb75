"""Builds gRPC wire schemas from plain tables.

Each schema is registered in its own descriptor pool, which gives real
protobuf message classes without a protoc step at build time.
"""

from __future__ import annotations

from google.protobuf import descriptor_pb2, descriptor_pool, message_factory

_F = descriptor_pb2.FieldDescriptorProto

_SCALARS = {
    "string": _F.TYPE_STRING,
    "int32": _F.TYPE_INT32,
}


class Schema:
    """``enums`` maps name -> value names (numbered from 0); ``messages`` maps
    name -> ``(field, type)`` pairs (numbered from 1); ``methods`` is a list of
    ``(name, request, response)`` on one service."""

    def __init__(self, filename: str, package: str, service: str, enums: dict, messages: dict, methods: list):
        self.package = package
        self.service = f"{package}.{service}"
        fdp = descriptor_pb2.FileDescriptorProto()
        fdp.name = filename
        fdp.package = package
        fdp.syntax = "proto3"

        for name, values in enums.items():
            enum = fdp.enum_type.add()
            enum.name = name
            for number, value_name in enumerate(values):
                value = enum.value.add()
                value.name = value_name
                value.number = number

        for name, fields in messages.items():
            msg = fdp.message_type.add()
            msg.name = name
            for number, (field_name, field_type) in enumerate(fields, start=1):
                f = msg.field.add()
                f.name = field_name
                f.number = number
                f.label = _F.LABEL_OPTIONAL
                if field_type in _SCALARS:
                    f.type = _SCALARS[field_type]
                else:
                    f.type = _F.TYPE_ENUM
                    f.type_name = f".{package}.{field_type}"

        svc = fdp.service.add()
        svc.name = service
        for method_name, request, response in methods:
            method = svc.method.add()
            method.name = method_name
            method.input_type = f".{package}.{request}"
            method.output_type = f".{package}.{response}"

        self._pool = descriptor_pool.DescriptorPool()
        self._pool.AddSerializedFile(fdp.SerializeToString())

    def message(self, name: str):
        return message_factory.GetMessageClass(self._pool.FindMessageTypeByName(f"{self.package}.{name}"))

    def method_path(self, method_name: str) -> str:
        return f"/{self.service}/{method_name}"
