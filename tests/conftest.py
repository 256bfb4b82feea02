"""Shared fixtures: stub engines, certificates and log capture."""

import datetime
import stat
import sys
from dataclasses import dataclass
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID
from loguru import logger

# Engine bodies. Each receives pandoc's argv: input path first, then flags.
COPY_ENGINE = """
import shutil
args = sys.argv[1:]
out = next(a.split("=", 1)[1] for a in args if a.startswith("--output="))
shutil.copyfile(args[0], out)
"""

CWD_ENGINE = """
import os
args = sys.argv[1:]
out = next(a.split("=", 1)[1] for a in args if a.startswith("--output="))
with open(out, "w") as f:
    f.write(os.getcwd())
"""

FAILING_ENGINE = """
sys.stderr.write("boom")
sys.exit(1)
"""

SLEEPING_ENGINE = """
import time
time.sleep(30)
"""

SILENT_ENGINE = """
pass
"""

# Spawns a long-lived helper the way pandoc spawns pdflatex, then hangs.
FORKING_ENGINE = """
import os, subprocess, time
helper = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"])
open(os.path.join(os.path.dirname(sys.argv[0]), "helper.pid"), "w").write(str(helper.pid))
time.sleep(30)
"""


@pytest.fixture
def make_engine(tmp_path):
    """Write an executable Python stub engine; its argv is recorded in ``<name>.args``."""

    def _make(body: str, name: str = "engine") -> Path:
        script = tmp_path / name
        args_file = tmp_path / f"{name}.args"
        script.write_text(
            f"#!{sys.executable}\n"
            "import json, sys\n"
            f"open({str(args_file)!r}, 'w').write(json.dumps(sys.argv[1:]))\n"
            f"{body}\n",
            encoding="utf-8",
        )
        script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return script

    return _make


@pytest.fixture
def temp_root(tmp_path):
    root = tmp_path / "tmp"
    root.mkdir()
    return root


@pytest.fixture
def log_messages():
    messages: list[str] = []
    handler_id = logger.add(lambda m: messages.append(str(m)), level="DEBUG", format="{level} | {message} | {extra}")
    yield messages
    logger.remove(handler_id)


def _name(common_name: str, organization: str | None = None) -> x509.Name:
    attrs = [x509.NameAttribute(NameOID.COMMON_NAME, common_name)]
    if organization:
        attrs.append(x509.NameAttribute(NameOID.ORGANIZATION_NAME, organization))
    return x509.Name(attrs)


def _key_usage(ca: bool) -> x509.KeyUsage:
    return x509.KeyUsage(
        digital_signature=True,
        content_commitment=False,
        key_encipherment=False,
        data_encipherment=False,
        key_agreement=False,
        key_cert_sign=ca,
        crl_sign=ca,
        encipher_only=False,
        decipher_only=False,
    )


@dataclass
class Issued:
    cert: x509.Certificate
    key: ec.EllipticCurvePrivateKey
    cert_path: Path
    key_path: Path


class Pki:
    def __init__(self, directory: Path) -> None:
        self.directory = directory
        self.ca = self._make_ca("Test Root CA")

    def _write(self, name: str, cert: x509.Certificate, key: ec.EllipticCurvePrivateKey) -> Issued:
        cert_path = self.directory / f"{name}.pem"
        key_path = self.directory / f"{name}.key"
        cert_path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
        key_path.write_bytes(
            key.private_bytes(
                serialization.Encoding.PEM,
                serialization.PrivateFormat.PKCS8,
                serialization.NoEncryption(),
            )
        )
        return Issued(cert, key, cert_path, key_path)

    def _make_ca(self, common_name: str) -> Issued:
        key = ec.generate_private_key(ec.SECP256R1())
        now = datetime.datetime.now(datetime.timezone.utc)
        name = _name(common_name)
        cert = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - datetime.timedelta(days=1))
            .not_valid_after(now + datetime.timedelta(days=1))
            .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
            .add_extension(_key_usage(ca=True), critical=True)
            .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
            .sign(key, hashes.SHA256())
        )
        return self._write(f"{common_name.replace(' ', '_')}_{cert.serial_number:x}", cert, key)

    def other_ca(self, common_name: str = "Other Root CA") -> Issued:
        return self._make_ca(common_name)

    def issue(
        self,
        common_name: str,
        organization: str | None = None,
        *,
        server: bool = False,
        issuer: Issued | None = None,
    ) -> Issued:
        issuer = issuer or self.ca
        key = ec.generate_private_key(ec.SECP256R1())
        now = datetime.datetime.now(datetime.timezone.utc)
        usage = ExtendedKeyUsageOID.SERVER_AUTH if server else ExtendedKeyUsageOID.CLIENT_AUTH
        cert = (
            x509.CertificateBuilder()
            .subject_name(_name(common_name, organization))
            .issuer_name(issuer.cert.subject)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - datetime.timedelta(days=1))
            .not_valid_after(now + datetime.timedelta(days=1))
            .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
            .add_extension(_key_usage(ca=False), critical=True)
            .add_extension(x509.ExtendedKeyUsage([usage]), critical=False)
            .add_extension(x509.SubjectAlternativeName([x509.DNSName("localhost")]), critical=False)
            .add_extension(
                x509.AuthorityKeyIdentifier.from_issuer_public_key(issuer.key.public_key()), critical=False
            )
            .sign(issuer.key, hashes.SHA256())
        )
        return self._write(f"{common_name.replace(' ', '_')}_{cert.serial_number:x}", cert, key)


@pytest.fixture(scope="session")
def pki(tmp_path_factory):
    return Pki(tmp_path_factory.mktemp("pki"))
