"""
TOTP setup codes rendered as QR rasters and terminal art.

This module provides the pieces around the terminal renderer in
``qr_text``: building a TOTP configuration from a raw secret, producing
its otpauth provisioning URI and current one-time codes, encoding the URI
as a QR code, and handing the decoded grayscale raster to the terminal
renderer. The QR structure is generated once and stored as a 2D boolean
array, while rendering is performed explicitly in pixel space.

Functions
---------
generate_secret
    Create a new random secret.
generate_token
    Current one-time code for a secret/issuer/account triple.
create_qr_png
    PNG bytes of the QR code for a secret/issuer/account triple.
generate_qr_raster
    Decoded grayscale raster of that QR code.
print_totp_qr
    Print the QR code to a terminal stream.
main
    Command-line entry point.

Classes
-------
TotpSpec
    Immutable TOTP configuration.
TotpCode
    Token generation and verification on top of pyotp.
QRSpec
    Immutable QR code configuration.
QRCodeImage
    QR code backed by a boolean module matrix with explicit rendering.

Examples
--------
>>> spec = TotpSpec(
...     secret="SUPERSecretSecretSecret",
...     account="test@test-email.com",
...     issuer="McCormick",
... )
>>> TotpCode(spec).provisioning_uri
'otpauth://totp/McCormick:test%40test-email.com?secret=KNKV...'

Print a setup code directly to the terminal:

>>> print_totp_qr("SUPERSecretSecretSecret", "McCormick", "me@example.com")

Notes
-----
The PNG bytes and the rendered terminal art both contain the secret.
Nothing in this module writes them to disk.
"""

from __future__ import annotations

import argparse
import hashlib
import logging
from base64 import b32encode
from dataclasses import dataclass
from datetime import datetime
from io import BytesIO
from typing import Iterable, Optional, TextIO, Union

import numpy as np
import pyotp
from PIL import Image

import qrcode
from qrcode.constants import (
    ERROR_CORRECT_L,
    ERROR_CORRECT_M,
    ERROR_CORRECT_Q,
    ERROR_CORRECT_H,
)
from qrcode.exceptions import DataOverflowError

from qr_text import (
    DEFAULT_TERMINAL_WIDTH,
    ColorMode,
    DecodeError,
    GrayscaleImage,
    QRTextError,
    RenderConfig,
    SizeMode,
    print_qr_text,
)

logger = logging.getLogger(__name__)

_ECC_MAP = {
    "L": ERROR_CORRECT_L,  # ~7% error correction
    "M": ERROR_CORRECT_M,  # ~15% (default)
    "Q": ERROR_CORRECT_Q,  # ~25%
    "H": ERROR_CORRECT_H,  # ~30%
}

_DIGEST_MAP = {
    "SHA1": hashlib.sha1,
    "SHA256": hashlib.sha256,
    "SHA512": hashlib.sha512,
}

MIN_SECRET_BYTES = 16  # 128 bits
TERMINAL_BOX_SIZE = 2

Timestamp = Union[int, datetime]


# ---------- TOTP ----------

@dataclass(frozen=True)
class TotpSpec:
    """
    Immutable configuration for a time-based one-time password.

    Parameters
    ----------
    secret : str
        Raw shared secret. Its UTF-8 bytes are the HMAC key; the otpauth
        URI carries them base32-encoded. Must be at least 16 bytes long.
    account : str
        Account name shown by authenticator apps (for example an email
        address). Must be non-empty and must not contain ':'.
    issuer : str, optional
        Issuer shown by authenticator apps. Must not contain ':'. The
        default is None.
    algorithm : {'SHA1', 'SHA256', 'SHA512'}, optional
        HMAC digest. Case-insensitive, normalized to uppercase. The
        default is 'SHA512'.
    digits : int, optional
        Length of generated codes. The default is 6.
    interval : int, optional
        Time step in seconds. The default is 30.
    skew : int, optional
        Number of time steps before and after the current one that
        ``TotpCode.verify`` accepts. The default is 1.

    Raises
    ------
    ValueError
        If any of the constraints above is violated.
    """

    secret: str
    account: str
    issuer: Optional[str] = None
    algorithm: str = "SHA512"
    digits: int = 6
    interval: int = 30
    skew: int = 1

    def __post_init__(self) -> None:
        if not isinstance(self.secret, str) or not self.secret:
            raise ValueError("'secret' must be a non-empty string")
        if len(self.secret.encode("utf-8")) < MIN_SECRET_BYTES:
            raise ValueError(
                f"'secret' must be at least {MIN_SECRET_BYTES} bytes (128 bits)"
            )

        if not isinstance(self.account, str) or not self.account.strip():
            raise ValueError("'account' must be a non-empty string")
        if ":" in self.account:
            raise ValueError("'account' must not contain ':'")
        if self.issuer is not None and ":" in self.issuer:
            raise ValueError("'issuer' must not contain ':'")

        algorithm = self.algorithm.upper()
        if algorithm not in _DIGEST_MAP:
            raise ValueError("'algorithm' must be one of {'SHA1', 'SHA256', 'SHA512'}")
        object.__setattr__(self, "algorithm", algorithm)

        if not 6 <= self.digits <= 8:
            raise ValueError("'digits' must be between 6 and 8")
        if self.interval < 1:
            raise ValueError("'interval' must be a positive number of seconds")
        if self.skew < 0:
            raise ValueError("'skew' must not be negative")

    @property
    def base32_secret(self) -> str:
        """Unpadded RFC 4648 base32 encoding of the raw secret."""
        return b32encode(self.secret.encode("utf-8")).decode("ascii").rstrip("=")


class TotpCode:
    """
    One-time code generator for a TotpSpec.

    Parameters
    ----------
    spec : TotpSpec
        Secret, labels and timing parameters.
    """

    def __init__(self, spec: TotpSpec) -> None:
        self.spec = spec
        self._totp = pyotp.TOTP(
            spec.base32_secret,
            digits=spec.digits,
            digest=_DIGEST_MAP[spec.algorithm],
            name=spec.account,
            issuer=spec.issuer,
            interval=spec.interval,
        )

    @property
    def provisioning_uri(self) -> str:
        """otpauth:// URI understood by authenticator apps."""
        return self._totp.provisioning_uri()

    def generate_token(self, for_time: Optional[Timestamp] = None) -> str:
        """Code for `for_time` (a UNIX timestamp or datetime), or for now."""
        if for_time is None:
            return self._totp.now()
        return self._totp.at(for_time)

    def verify(self, token: str, for_time: Optional[Timestamp] = None) -> bool:
        """Check `token`, allowing ``spec.skew`` steps of clock drift."""
        return self._totp.verify(
            token, for_time=for_time, valid_window=self.spec.skew
        )


def generate_secret() -> str:
    """Random 32-character secret suitable for ``TotpSpec.secret``."""
    return pyotp.random_base32()


# ---------- QR ----------

@dataclass(frozen=True)
class QRSpec:
    """
    Immutable configuration specification for generating a QR code.

    Parameters
    ----------
    data : str
        Payload encoded into the QR code. Must be a non-empty string.
    box_size : int, optional
        Size, in pixels, of each QR code module. The default is 10.
    border : int, optional
        Width, in modules, of the quiet zone around the code. The
        default is 4, which is the minimum recommended by the QR
        standard.
    ecc : {'L', 'M', 'Q', 'H'}, optional
        Error-correction level. The value is case-insensitive and is
        normalized to uppercase. The default is 'M'.

    Raises
    ------
    ValueError
        If `data` is empty or whitespace, `box_size` is not positive,
        `border` is negative, or `ecc` is not one of {'L', 'M', 'Q', 'H'}.
    """

    data: str
    box_size: int = 10
    border: int = 4
    ecc: str = "M"

    def __post_init__(self) -> None:
        if not isinstance(self.data, str) or not self.data.strip():
            raise ValueError("'data' must be a non-empty string")
        if self.box_size < 1:
            raise ValueError("'box_size' must be at least 1")
        if self.border < 0:
            raise ValueError("'border' must not be negative")

        ecc_upper = self.ecc.upper()
        if ecc_upper not in _ECC_MAP:
            raise ValueError("'ecc' must be one of {'L', 'M', 'Q', 'H'}")

        # Store normalized ECC
        object.__setattr__(self, "ecc", ecc_upper)

    @property
    def ecc_level(self) -> int:
        return _ECC_MAP[self.ecc]


class QRCodeImage:
    """
    Generated QR code backed by a boolean module matrix.

    Parameters
    ----------
    spec : QRSpec
        QR code configuration, including payload (`data`), module box
        size, border width, and error-correction level.

    Attributes
    ----------
    spec : QRSpec
        QR specification used to generate this image.
    matrix : numpy.ndarray
        Boolean 2D array representing the QR module grid with shape
        (rows, cols). True indicates a dark module.
    module_shape : tuple of int
        Shape of the QR module grid as (rows, cols).
    pixel_shape : tuple of int
        Shape of the rendered QR image in pixels as (height, width),
        including the quiet-zone border.

    Raises
    ------
    DecodeError
        If the payload does not fit in any QR version.
    """

    def __init__(self, spec: QRSpec) -> None:
        self.spec = spec
        self._matrix = self._build_matrix()

    # ---------- Core matrix generation ----------

    def _build_matrix(self) -> np.ndarray:
        qr = qrcode.QRCode(
            version=None,  # let the library pick
            error_correction=self.spec.ecc_level,
            box_size=1,
            border=0,
        )
        qr.add_data(self.spec.data)
        try:
            qr.make(fit=True)
        except (DataOverflowError, ValueError) as exc:
            raise DecodeError(f"could not encode QR payload: {exc}") from exc

        return np.array(qr.get_matrix(), dtype=bool)

    @property
    def matrix(self) -> np.ndarray:
        return self._matrix

    @property
    def module_shape(self) -> tuple[int, int]:
        return self._matrix.shape

    @property
    def pixel_shape(self) -> tuple[int, int]:
        """
        Shape of the rendered QR image in pixels as (height, width).

        The pixel dimensions include the quiet-zone border and depend
        on both the module grid shape and the box size.
        """
        rows, cols = self.module_shape
        h = (rows + 2 * self.spec.border) * self.spec.box_size
        w = (cols + 2 * self.spec.border) * self.spec.box_size
        return h, w

    # ---------- Rendering ----------

    def _full_mask(self) -> np.ndarray:
        """
        Construct the full-resolution boolean mask in pixel space.

        Returns
        -------
        numpy.ndarray
            Boolean array of shape (H, W) where True marks pixels of dark
            modules and False marks background pixels, including the
            quiet-zone border.
        """
        box = self.spec.box_size

        # Scale module grid with Kronecker product
        scaled = np.kron(self.matrix, np.ones((box, box), dtype=bool))
        # Pad border in pixels (border modules * box_size pixels)
        pad = self.spec.border * box
        return np.pad(
            scaled,
            pad_width=pad,
            mode="constant",
            constant_values=False,
        )

    def render_array(self, *, fg: int = 0, bg: int = 255) -> np.ndarray:
        """
        Render the QR code to a grayscale NumPy array.

        Parameters
        ----------
        fg : int, optional
            Intensity (0–255) of dark modules. The default is 0.
        bg : int, optional
            Intensity (0–255) of background pixels, including the
            quiet-zone border. The default is 255.

        Returns
        -------
        numpy.ndarray
            Array of shape (H, W) with dtype uint8.
        """
        h, w = self.pixel_shape
        img = np.full((h, w), bg, dtype=np.uint8)
        img[self._full_mask()] = fg
        return img

    def render_pil(self, *, fg: int = 0, bg: int = 255) -> Image.Image:
        """Render the QR code as a PIL image in 'L' mode."""
        return Image.fromarray(self.render_array(fg=fg, bg=bg))

    def to_png_bytes(self, *, fg: int = 0, bg: int = 255) -> bytes:
        """
        Return PNG-encoded bytes of the rendered QR code.

        BEWARE: for a TOTP payload the PNG contains the secret.
        """
        img = self.render_pil(fg=fg, bg=bg)
        buf = BytesIO()
        img.save(buf, format="PNG")
        return buf.getvalue()

    def to_grayscale(self) -> GrayscaleImage:
        """
        Rendered QR code as a raster for ``qr_text``, without PNG encoding.

        Returns
        -------
        GrayscaleImage
            Image with dark modules at 0 and background at 255.
        """
        return GrayscaleImage(self.render_array())


# ---------- Helpers for a secret/issuer/account triple ----------

def make_totp(
    secret: str,
    issuer: Optional[str],
    account: str,
) -> TotpCode:
    """
    Create a TotpCode with the default algorithm and timing.

    Raises
    ------
    ValueError
        If the secret, issuer or account is rejected by TotpSpec.
    """
    return TotpCode(TotpSpec(secret=secret, account=account, issuer=issuer))


def make_qr(
    secret: str,
    issuer: Optional[str],
    account: str,
    *,
    box_size: int = 10,
    border: int = 4,
    ecc: str = "M",
) -> QRCodeImage:
    """Create the QRCodeImage encoding the provisioning URI of a TOTP."""
    uri = make_totp(secret, issuer, account).provisioning_uri
    spec = QRSpec(data=uri, box_size=box_size, border=border, ecc=ecc)
    return QRCodeImage(spec)


def generate_token(secret: str, issuer: Optional[str], account: str) -> str:
    """Current one-time code for the given secret."""
    return make_totp(secret, issuer, account).generate_token()


def create_qr_png(
    secret: str,
    issuer: Optional[str],
    account: str,
    *,
    box_size: int = 10,
    border: int = 4,
) -> bytes:
    """
    PNG bytes of the setup QR code.

    BEWARE: the PNG contains the secret.
    """
    qr = make_qr(secret, issuer, account, box_size=box_size, border=border)
    return qr.to_png_bytes()


def generate_qr_raster(
    secret: str,
    issuer: Optional[str],
    account: str,
    *,
    box_size: int = TERMINAL_BOX_SIZE,
    border: int = 4,
) -> GrayscaleImage:
    """
    Decoded grayscale raster of the setup QR code.

    The code is serialized to PNG and decoded again, so the raster is
    exactly what an image consumer of ``create_qr_png`` would see.

    Raises
    ------
    DecodeError
        If the QR code could not be built or the PNG could not be
        decoded.
    """
    png = create_qr_png(secret, issuer, account, box_size=box_size, border=border)
    image = GrayscaleImage.from_png_bytes(png)
    logger.debug("QR raster is %dx%d pixels", image.width, image.height)
    return image


def print_totp_qr(
    secret: str,
    issuer: Optional[str],
    account: str,
    config: Optional[RenderConfig] = None,
    out: Optional[TextIO] = None,
) -> None:
    """Print the setup QR code as terminal art (to ``sys.stdout`` by default)."""
    print_qr_text(generate_qr_raster(secret, issuer, account), config, out)


# ---------- Command line ----------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="totp-qr",
        description="Print a TOTP setup QR code in the terminal.",
    )
    parser.add_argument("account", help="Account name, e.g. an email address.")
    parser.add_argument("--issuer", default=None, help="Issuer shown by the app.")
    parser.add_argument(
        "--secret",
        default=None,
        help="Raw secret (at least 16 characters). A new one is generated "
        "when omitted.",
    )
    parser.add_argument(
        "--width",
        type=int,
        default=DEFAULT_TERMINAL_WIDTH,
        help=f"Target terminal width in columns (default: {DEFAULT_TERMINAL_WIDTH}).",
    )
    parser.add_argument(
        "--invert",
        action="store_true",
        help="Invert colors, for terminals with a light background.",
    )
    parser.add_argument(
        "--mini",
        action="store_true",
        help="Use half-block characters to halve the height.",
    )
    parser.add_argument(
        "--no-captions",
        action="store_true",
        help="Do not print the instructions below the code.",
    )
    parser.add_argument(
        "--token",
        action="store_true",
        help="Also print the current one-time code.",
    )
    parser.add_argument("--verbose", action="store_true", help="Debug logging.")
    return parser


def main(argv: Optional[Iterable[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    secret = args.secret
    if secret is None:
        secret = generate_secret()
        print(f"Generated secret: {secret}")

    try:
        config = RenderConfig(
            terminal_width=args.width,
            color_mode=ColorMode.INVERTED if args.invert else ColorMode.DIRECT,
            size_mode=SizeMode.MINI if args.mini else SizeMode.FULL,
            captions=not args.no_captions,
        )
        print_totp_qr(secret, args.issuer, args.account, config)
        if args.token:
            print(f"Current code: {generate_token(secret, args.issuer, args.account)}")
    except (QRTextError, ValueError) as exc:
        logger.error("%s", exc)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
