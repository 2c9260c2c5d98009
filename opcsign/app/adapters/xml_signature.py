"""XML digital signature envelope for OPC packages.

A signature part holds one ``ds:Signature``. Its ``ds:Object`` carries a
``ds:Manifest`` with one reference per signed part; ``ds:SignedInfo``
references that object and is the only thing signed by the remote key.
Timestamp tokens are attached afterwards as a XAdES ``SignatureTimeStamp``
over the ``ds:SignatureValue`` bytes.
"""

from __future__ import annotations

import copy
import logging
import xml.etree.ElementTree as ET
from typing import TYPE_CHECKING

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.asymmetric.utils import Prehashed

from opcsign.app.ports.signer import SigningContextPort
from opcsign.app.ports.timestamp import TimestamperPort, TimestampError, TimestampResult
from opcsign.errors import PackageError, SignatureVerificationError
from opcsign.utils.algorithms import HashAlgorithmName, compute_digest
from opcsign.utils.crypto import decode_bytes, encode_bytes, load_certificate

if TYPE_CHECKING:  # pragma: no cover
    from opcsign.app.adapters.opc_package import OpcPackage

logger = logging.getLogger(__name__)

DSIG_NS = "http://www.w3.org/2000/09/xmldsig#"
XADES_NS = "http://uri.etsi.org/01903/v1.3.2#"
C14N2_URI = "http://www.w3.org/2010/xml-c14n2"
OBJECT_TYPE_URI = "http://www.w3.org/2000/09/xmldsig#Object"
PACKAGE_OBJECT_ID = "idPackageObject"
TIMESTAMP_ID = "idSignatureTimestamp"

ET.register_namespace("ds", DSIG_NS)
ET.register_namespace("xades", XADES_NS)

DIGEST_METHOD_URIS = {
    HashAlgorithmName.SHA1: "http://www.w3.org/2000/09/xmldsig#sha1",
    HashAlgorithmName.SHA256: "http://www.w3.org/2001/04/xmlenc#sha256",
    HashAlgorithmName.SHA384: "http://www.w3.org/2001/04/xmldsig-more#sha384",
    HashAlgorithmName.SHA512: "http://www.w3.org/2001/04/xmlenc#sha512",
}

SIGNATURE_METHOD_URIS = {
    HashAlgorithmName.SHA1: "http://www.w3.org/2000/09/xmldsig#rsa-sha1",
    HashAlgorithmName.SHA256: "http://www.w3.org/2001/04/xmldsig-more#rsa-sha256",
    HashAlgorithmName.SHA384: "http://www.w3.org/2001/04/xmldsig-more#rsa-sha384",
    HashAlgorithmName.SHA512: "http://www.w3.org/2001/04/xmldsig-more#rsa-sha512",
}

_DIGEST_ALGORITHMS_BY_URI = {uri: name for name, uri in DIGEST_METHOD_URIS.items()}
_SIGNATURE_ALGORITHMS_BY_URI = {uri: name for name, uri in SIGNATURE_METHOD_URIS.items()}


def _ds(tag: str) -> str:
    return f"{{{DSIG_NS}}}{tag}"


def _xades(tag: str) -> str:
    return f"{{{XADES_NS}}}{tag}"


def canonicalize(element: ET.Element) -> bytes:
    """Canonical bytes of ``element`` (C14N 2.0, prefixes rewritten)."""
    detached = copy.copy(element)
    detached.tail = None
    return ET.canonicalize(
        ET.tostring(detached, encoding="unicode"), rewrite_prefixes=True
    ).encode("utf-8")


def part_reference_uri(part_name: str, content_type: str) -> str:
    return f"/{part_name}?ContentType={content_type}"


def part_name_from_uri(uri: str) -> str:
    return uri.split("?", 1)[0].lstrip("/")


class XmlSignatureBuilder:
    """Collects package parts and commits a single signature over them."""

    def __init__(self, package: OpcPackage) -> None:
        self._package = package
        self._part_names: list[str] = []

    @property
    def part_names(self) -> list[str]:
        return list(self._part_names)

    def enqueue_part(self, part_name: str) -> None:
        self._package.read_part(part_name)
        if part_name not in self._part_names:
            self._part_names.append(part_name)

    def enqueue_named_preset(self, preset: str) -> None:
        for part_name in self._package.select_parts(preset):
            self.enqueue_part(part_name)

    async def sign(self, context: SigningContextPort) -> OpcSignature:
        """Build, remotely sign, verify, and commit the signature.

        Nothing is written unless the signature verifies against the
        context's certificate. Existing signatures are replaced.

        Raises:
            PackageError: If no parts are selected or the commit fails
            RemoteSigningError: If the remote authority fails
            SignatureVerificationError: If the returned signature does not verify
        """
        if not self._part_names:
            raise PackageError("No package parts were selected for signing.")

        file_algorithm = context.file_digest_algorithm
        pkcs_algorithm = context.pkcs_digest_algorithm

        package_object = self._build_package_object(file_algorithm)
        signed_info = _build_signed_info(package_object, file_algorithm, pkcs_algorithm)
        digest = compute_digest(canonicalize(signed_info), pkcs_algorithm)

        signature_value = await context.sign_digest(digest)
        if not await context.verify_digest(digest, signature_value):
            raise SignatureVerificationError(
                "The signature returned by the remote authority does not verify "
                "against the signing certificate."
            )

        root = ET.Element(_ds("Signature"))
        root.append(signed_info)
        ET.SubElement(root, _ds("SignatureValue")).text = encode_bytes(signature_value)
        key_info = ET.SubElement(root, _ds("KeyInfo"))
        x509_data = ET.SubElement(key_info, _ds("X509Data"))
        ET.SubElement(x509_data, _ds("X509Certificate")).text = encode_bytes(
            context.certificate.public_bytes(serialization.Encoding.DER)
        )
        root.append(package_object)

        part_name = self._package.new_signature_part_name()
        self._package.commit_signature(part_name, _serialize(root))
        logger.info(
            "Signed %d parts of %s into %s",
            len(self._part_names),
            self._package.path.name,
            part_name,
        )
        return OpcSignature(self._package, part_name, root)

    def _build_package_object(self, algorithm: HashAlgorithmName) -> ET.Element:
        package_object = ET.Element(_ds("Object"), Id=PACKAGE_OBJECT_ID)
        manifest = ET.SubElement(package_object, _ds("Manifest"))
        for part_name in self._part_names:
            reference = ET.SubElement(
                manifest,
                _ds("Reference"),
                URI=part_reference_uri(part_name, self._package.content_type(part_name)),
            )
            ET.SubElement(reference, _ds("DigestMethod"), Algorithm=DIGEST_METHOD_URIS[algorithm])
            ET.SubElement(reference, _ds("DigestValue")).text = encode_bytes(
                compute_digest(self._package.read_part(part_name), algorithm)
            )
        return package_object


class OpcSignature:
    """A signature part read from, or just written to, a package."""

    def __init__(self, package: OpcPackage, part_name: str, root: ET.Element) -> None:
        self._package = package
        self.part_name = part_name
        self._root = root

        signature_method = root.find(f"{_ds('SignedInfo')}/{_ds('SignatureMethod')}")
        value = root.findtext(_ds("SignatureValue"))
        if signature_method is None or value is None:
            raise PackageError(f"Signature part '{part_name}' is incomplete.")
        self.signature_method: str = signature_method.get("Algorithm", "")
        try:
            self.signature_value = decode_bytes(value)
        except ValueError as exc:
            raise PackageError(f"Signature part '{part_name}' has a corrupt value.") from exc

        self.certificate: x509.Certificate | None = None
        encoded_certificate = root.findtext(
            f"{_ds('KeyInfo')}/{_ds('X509Data')}/{_ds('X509Certificate')}"
        )
        if encoded_certificate:
            try:
                self.certificate = load_certificate(decode_bytes(encoded_certificate))
            except ValueError as exc:
                raise PackageError(
                    f"Signature part '{part_name}' embeds an unreadable certificate."
                ) from exc

    @classmethod
    def parse(cls, package: OpcPackage, part_name: str, data: bytes) -> OpcSignature:
        try:
            root = ET.fromstring(data)
        except ET.ParseError as exc:
            raise PackageError(f"Signature part '{part_name}' is not well-formed XML.") from exc
        if root.tag != _ds("Signature"):
            raise PackageError(f"Part '{part_name}' is not an XML signature.")
        return cls(package, part_name, root)

    @property
    def timestamp_token(self) -> bytes | None:
        encoded = self._root.findtext(f".//{_xades('EncapsulatedTimeStamp')}")
        if not encoded:
            return None
        return decode_bytes(encoded)

    @property
    def timestamped(self) -> bool:
        return self.timestamp_token is not None

    def create_timestamp_builder(self) -> XmlTimestampBuilder:
        return XmlTimestampBuilder(self, self._package.timestamper)

    def embed_timestamp(self, token: bytes) -> None:
        """Attach ``token`` (replacing any previous one) and rewrite the part."""
        for package_object in self._root.findall(_ds("Object")):
            if package_object.find(_xades("SignatureTimeStamp")) is not None:
                self._root.remove(package_object)

        timestamp_object = ET.SubElement(self._root, _ds("Object"))
        timestamp = ET.SubElement(timestamp_object, _xades("SignatureTimeStamp"), Id=TIMESTAMP_ID)
        ET.SubElement(timestamp, _xades("EncapsulatedTimeStamp")).text = encode_bytes(token)
        self._package.rewrite_part(self.part_name, _serialize(self._root))

    def verify(self) -> bool:
        """Check the signature value and every manifest digest locally."""
        if self.certificate is None:
            return False
        public_key = self.certificate.public_key()
        pkcs_algorithm = _SIGNATURE_ALGORITHMS_BY_URI.get(self.signature_method)
        signed_info = self._root.find(_ds("SignedInfo"))
        if not isinstance(public_key, rsa.RSAPublicKey) or pkcs_algorithm is None:
            return False
        if signed_info is None:
            return False

        digest = compute_digest(canonicalize(signed_info), pkcs_algorithm)
        try:
            public_key.verify(
                self.signature_value,
                digest,
                padding.PKCS1v15(),
                Prehashed(pkcs_algorithm.hash_algorithm()),
            )
        except InvalidSignature:
            return False

        objects = {
            element.get("Id"): element for element in self._root.findall(_ds("Object"))
        }
        for reference in signed_info.findall(_ds("Reference")):
            target = objects.get(reference.get("URI", "").lstrip("#"))
            if target is None or not _digest_matches(reference, canonicalize(target)):
                return False

        package_object = objects.get(PACKAGE_OBJECT_ID)
        if package_object is None:
            return False
        for reference in package_object.iter(_ds("Reference")):
            part_name = part_name_from_uri(reference.get("URI", ""))
            data = self._package.parts.get(part_name)
            if data is None or not _digest_matches(reference, data):
                return False
        return True


class XmlTimestampBuilder:
    """Requests a timestamp over a committed signature's value."""

    def __init__(self, signature: OpcSignature, timestamper: TimestamperPort) -> None:
        self._signature = signature
        self._timestamper = timestamper

    async def sign(
        self, timestamp_url: str, digest_algorithm: HashAlgorithmName
    ) -> TimestampResult:
        try:
            token = await self._timestamper.timestamp(
                timestamp_url, digest_algorithm, self._signature.signature_value
            )
        except TimestampError as exc:
            logger.warning("Timestamping %s failed: %s", self._signature.part_name, exc)
            return TimestampResult.FAILED

        self._signature.embed_timestamp(token)
        logger.info("Timestamped %s via %s", self._signature.part_name, timestamp_url)
        return TimestampResult.SUCCESS


def _build_signed_info(
    package_object: ET.Element,
    file_algorithm: HashAlgorithmName,
    pkcs_algorithm: HashAlgorithmName,
) -> ET.Element:
    signed_info = ET.Element(_ds("SignedInfo"))
    ET.SubElement(signed_info, _ds("CanonicalizationMethod"), Algorithm=C14N2_URI)
    ET.SubElement(
        signed_info, _ds("SignatureMethod"), Algorithm=SIGNATURE_METHOD_URIS[pkcs_algorithm]
    )
    reference = ET.SubElement(
        signed_info, _ds("Reference"), URI=f"#{PACKAGE_OBJECT_ID}", Type=OBJECT_TYPE_URI
    )
    ET.SubElement(reference, _ds("DigestMethod"), Algorithm=DIGEST_METHOD_URIS[file_algorithm])
    ET.SubElement(reference, _ds("DigestValue")).text = encode_bytes(
        compute_digest(canonicalize(package_object), file_algorithm)
    )
    return signed_info


def _digest_matches(reference: ET.Element, data: bytes) -> bool:
    method = reference.find(_ds("DigestMethod"))
    expected = reference.findtext(_ds("DigestValue"))
    if method is None or expected is None:
        return False
    algorithm = _DIGEST_ALGORITHMS_BY_URI.get(method.get("Algorithm", ""))
    if algorithm is None:
        return False
    try:
        return decode_bytes(expected) == compute_digest(data, algorithm)
    except ValueError:
        return False


def _serialize(root: ET.Element) -> bytes:
    return ET.tostring(root, encoding="utf-8", xml_declaration=True)
