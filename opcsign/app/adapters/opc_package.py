"""OPC (zip) package adapter used for VSIX files.

Only what signing needs is implemented: reading parts, resolving content
types, locating signature parts through the signature origin, and committing
a new signature set atomically.
"""

from __future__ import annotations

import logging
import posixpath
import uuid
import xml.etree.ElementTree as ET
import zipfile
from collections.abc import Callable, Mapping
from pathlib import Path
from types import MappingProxyType, TracebackType
from typing import BinaryIO

from opcsign.app.adapters.timestamp import Rfc3161Timestamper
from opcsign.app.adapters.xml_signature import OpcSignature, XmlSignatureBuilder
from opcsign.app.ports.package import VSIX_SIGNATURE_PRESET, PackageFileMode
from opcsign.app.ports.timestamp import TimestamperPort
from opcsign.errors import PackageError
from opcsign.utils.atomic import atomic_write
from opcsign.utils.locking import ExclusiveFileLock

logger = logging.getLogger(__name__)

CONTENT_TYPES_PART = "[Content_Types].xml"
SIGNATURE_ROOT = "package/services/digital-signature/"
ORIGIN_PART = SIGNATURE_ROOT + "origin.psdor"
ORIGIN_RELS_PART = SIGNATURE_ROOT + "_rels/origin.psdor.rels"
XML_SIGNATURE_DIR = SIGNATURE_ROOT + "xml-signature/"

CONTENT_TYPES_NS = "http://schemas.openxmlformats.org/package/2006/content-types"
RELATIONSHIPS_NS = "http://schemas.openxmlformats.org/package/2006/relationships"
SIGNATURE_RELATIONSHIP_TYPE = (
    "http://schemas.openxmlformats.org/package/2006/relationships/digital-signature/signature"
)
DEFAULT_CONTENT_TYPE = "application/octet-stream"

SIGNATURE_CONTENT_TYPES = {
    "psdor": "application/vnd.openxmlformats-package.digital-signature-origin",
    "psdsxs": "application/vnd.openxmlformats-package.digital-signature-xmlsignature+xml",
    "rels": "application/vnd.openxmlformats-package.relationships+xml",
}


def is_signature_part(name: str) -> bool:
    """True for parts that belong to the digital signature infrastructure."""
    return name.startswith(SIGNATURE_ROOT)


def _vsix_selector(name: str) -> bool:
    return name != CONTENT_TYPES_PART and not is_signature_part(name)


SIGNATURE_PRESETS: dict[str, Callable[[str], bool]] = {
    VSIX_SIGNATURE_PRESET: _vsix_selector,
}


class OpcPackage:
    """An opened OPC package.

    Opening for read-write takes an exclusive lock that is held until
    :meth:`close`. All parts are read into memory; commits rewrite the whole
    archive through a temporary file and ``os.replace``.
    """

    def __init__(
        self,
        path: Path,
        mode: PackageFileMode,
        parts: dict[str, bytes],
        *,
        lock: ExclusiveFileLock | None = None,
        timestamper: TimestamperPort | None = None,
    ) -> None:
        self.path = path
        self.mode = mode
        self._parts = parts
        self._lock = lock
        self.timestamper: TimestamperPort = timestamper or Rfc3161Timestamper()
        self._closed = False

    @classmethod
    def open(
        cls,
        path: Path | str,
        mode: PackageFileMode = PackageFileMode.READ,
        *,
        timestamper: TimestamperPort | None = None,
    ) -> OpcPackage:
        """Open the package at ``path``.

        Raises:
            PackageLockedError: If another process holds the package
            PackageError: If the file is missing or is not a zip archive
        """
        package_path = Path(path)
        lock = ExclusiveFileLock(package_path) if mode is PackageFileMode.READ_WRITE else None
        if lock is not None:
            lock.acquire()
        try:
            parts = _read_parts(package_path)
        except BaseException:
            if lock is not None:
                lock.release()
            raise
        logger.debug("Opened %s (%s) with %d parts", package_path, mode.value, len(parts))
        return cls(package_path, mode, parts, lock=lock, timestamper=timestamper)

    def __enter__(self) -> OpcPackage:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._lock is not None:
            self._lock.release()

    @property
    def parts(self) -> Mapping[str, bytes]:
        return MappingProxyType(self._parts)

    def part_names(self) -> list[str]:
        return sorted(self._parts)

    def read_part(self, name: str) -> bytes:
        try:
            return self._parts[name]
        except KeyError:
            raise PackageError(f"Part '{name}' does not exist in {self.path.name}.") from None

    def select_parts(self, preset: str) -> list[str]:
        """Return the part names a named signature preset covers, sorted."""
        try:
            selector = SIGNATURE_PRESETS[preset]
        except KeyError:
            raise ValueError(f"Unknown signature preset '{preset}'.") from None
        return [name for name in self.part_names() if selector(name)]

    def content_type(self, name: str) -> str:
        """Resolve the content type of ``name`` from ``[Content_Types].xml``."""
        data = self._parts.get(CONTENT_TYPES_PART)
        if data is None:
            return DEFAULT_CONTENT_TYPE
        root = _parse_xml(data, CONTENT_TYPES_PART)
        for override in root.iter(f"{{{CONTENT_TYPES_NS}}}Override"):
            if override.get("PartName", "").lstrip("/").lower() == name.lower():
                return override.get("ContentType", DEFAULT_CONTENT_TYPE)
        extension = posixpath.splitext(name)[1].lstrip(".").lower()
        for default in root.iter(f"{{{CONTENT_TYPES_NS}}}Default"):
            if default.get("Extension", "").lower() == extension:
                return default.get("ContentType", DEFAULT_CONTENT_TYPE)
        return DEFAULT_CONTENT_TYPE

    def get_signatures(self) -> list[OpcSignature]:
        """Return the signatures reachable from the signature origin."""
        return [
            OpcSignature.parse(self, part_name, self._parts[part_name])
            for part_name in self._signature_part_names()
        ]

    def create_signature_builder(self) -> XmlSignatureBuilder:
        return XmlSignatureBuilder(self)

    def new_signature_part_name(self) -> str:
        return f"{XML_SIGNATURE_DIR}{uuid.uuid4().hex}.psdsxs"

    def commit_signature(self, part_name: str, data: bytes) -> None:
        """Replace every existing signature with ``part_name`` in one write."""
        updates: dict[str, bytes | None] = {
            name: None for name in self._parts if name.startswith(XML_SIGNATURE_DIR)
        }
        updates[part_name] = data
        updates[ORIGIN_PART] = self._parts.get(ORIGIN_PART, b"")
        updates[ORIGIN_RELS_PART] = _build_origin_relationships(part_name)
        updates[CONTENT_TYPES_PART] = _ensure_signature_content_types(
            self._parts.get(CONTENT_TYPES_PART)
        )
        self._commit(updates)

    def rewrite_part(self, part_name: str, data: bytes) -> None:
        """Replace the contents of one existing part."""
        if part_name not in self._parts:
            raise PackageError(f"Part '{part_name}' does not exist in {self.path.name}.")
        self._commit({part_name: data})

    def _signature_part_names(self) -> list[str]:
        rels = self._parts.get(ORIGIN_RELS_PART)
        if rels is None:
            return []
        root = _parse_xml(rels, ORIGIN_RELS_PART)
        names: list[str] = []
        for relationship in root.iter(f"{{{RELATIONSHIPS_NS}}}Relationship"):
            if relationship.get("Type") != SIGNATURE_RELATIONSHIP_TYPE:
                continue
            target = _resolve_target(relationship.get("Target", ""))
            if target not in self._parts:
                raise PackageError(f"Signature part '{target}' referenced but missing.")
            names.append(target)
        return names

    def _commit(self, updates: Mapping[str, bytes | None]) -> None:
        if self.mode is not PackageFileMode.READ_WRITE or self._closed:
            raise PackageError(f"{self.path.name} is not open for writing.")

        parts = dict(self._parts)
        for name, data in updates.items():
            if data is None:
                parts.pop(name, None)
            else:
                parts[name] = data

        def write(handle: BinaryIO) -> None:
            with zipfile.ZipFile(handle, "w", compression=zipfile.ZIP_DEFLATED) as archive:
                for name, content in parts.items():
                    archive.writestr(name, content)

        try:
            atomic_write(self.path, write)
        except OSError as exc:
            raise PackageError(f"Failed to write {self.path}: {exc}") from exc

        self._parts = parts
        logger.debug("Committed %d part updates to %s", len(updates), self.path)


def _read_parts(path: Path) -> dict[str, bytes]:
    try:
        with zipfile.ZipFile(path, "r") as archive:
            return {
                info.filename: archive.read(info)
                for info in archive.infolist()
                if not info.is_dir()
            }
    except FileNotFoundError as exc:
        raise PackageError(f"Package not found: {path}") from exc
    except zipfile.BadZipFile as exc:
        raise PackageError(f"{path} is not a valid OPC package: {exc}") from exc
    except OSError as exc:
        raise PackageError(f"Failed to read {path}: {exc}") from exc


def _parse_xml(data: bytes, part_name: str) -> ET.Element:
    try:
        return ET.fromstring(data)
    except ET.ParseError as exc:
        raise PackageError(f"Part '{part_name}' is not well-formed XML: {exc}") from exc


def _resolve_target(target: str) -> str:
    """Resolve a relationship target relative to the signature origin."""
    if target.startswith("/"):
        return posixpath.normpath(target.lstrip("/"))
    return posixpath.normpath(posixpath.join(SIGNATURE_ROOT, target))


def _build_origin_relationships(signature_part: str) -> bytes:
    root = ET.Element(f"{{{RELATIONSHIPS_NS}}}Relationships")
    ET.SubElement(
        root,
        f"{{{RELATIONSHIPS_NS}}}Relationship",
        Id=f"R{uuid.uuid4().hex[:16].upper()}",
        Type=SIGNATURE_RELATIONSHIP_TYPE,
        Target=posixpath.relpath(signature_part, SIGNATURE_ROOT),
    )
    return _serialize(root, RELATIONSHIPS_NS, ORIGIN_RELS_PART)


def _ensure_signature_content_types(data: bytes | None) -> bytes:
    if data is None:
        root = ET.Element(f"{{{CONTENT_TYPES_NS}}}Types")
    else:
        root = _parse_xml(data, CONTENT_TYPES_PART)
    present = {
        default.get("Extension", "").lower()
        for default in root.iter(f"{{{CONTENT_TYPES_NS}}}Default")
    }
    missing = [ext for ext in SIGNATURE_CONTENT_TYPES if ext not in present]
    if data is not None and not missing:
        return data
    for extension in missing:
        ET.SubElement(
            root,
            f"{{{CONTENT_TYPES_NS}}}Default",
            Extension=extension,
            ContentType=SIGNATURE_CONTENT_TYPES[extension],
        )
    return _serialize(root, CONTENT_TYPES_NS, CONTENT_TYPES_PART)


def _serialize(root: ET.Element, namespace: str, part_name: str) -> bytes:
    """Serialize ``root`` with ``namespace`` declared as the default namespace.

    OPC attributes are unqualified, so tags are rewritten to local names under
    a literal ``xmlns`` attribute.
    """
    prefix = f"{{{namespace}}}"

    def unqualify(element: ET.Element) -> ET.Element:
        if not isinstance(element.tag, str) or not element.tag.startswith(prefix):
            raise PackageError(f"Part '{part_name}' contains an element outside {namespace}.")
        local = ET.Element(element.tag[len(prefix) :], element.attrib)
        local.text = element.text
        local.tail = element.tail
        local.extend(unqualify(child) for child in element)
        return local

    document = unqualify(root)
    document.set("xmlns", namespace)
    return ET.tostring(document, encoding="utf-8", xml_declaration=True)
