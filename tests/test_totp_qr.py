from __future__ import annotations

import io
from urllib.parse import parse_qs, unquote, urlparse

import numpy as np
import pytest

from qr_text import CAPTIONS, DecodeError, RenderConfig, SizeMode
from totp_qr import (
    QRCodeImage,
    QRSpec,
    TotpCode,
    TotpSpec,
    create_qr_png,
    generate_qr_raster,
    generate_secret,
    generate_token,
    main,
    make_qr,
    print_totp_qr,
)

SECRET = "SUPERSecretSecretSecret"
ISSUER = "McCormick"
ACCOUNT = "test@test-email.com"


@pytest.fixture
def code() -> TotpCode:
    return TotpCode(TotpSpec(secret=SECRET, account=ACCOUNT, issuer=ISSUER))


# ---------- TOTP ----------

def test_secret_is_base32_encoded_without_padding() -> None:
    spec = TotpSpec(secret=SECRET, account=ACCOUNT)
    assert spec.base32_secret == "KNKVARKSKNSWG4TFORJWKY3SMV2FGZLDOJSXI"


def test_provisioning_uri(code: TotpCode) -> None:
    uri = urlparse(code.provisioning_uri)
    assert uri.scheme == "otpauth"
    assert uri.netloc == "totp"
    assert unquote(uri.path) == f"/{ISSUER}:{ACCOUNT}"
    query = parse_qs(uri.query)
    assert query["secret"] == ["KNKVARKSKNSWG4TFORJWKY3SMV2FGZLDOJSXI"]
    assert query["issuer"] == [ISSUER]
    assert query["algorithm"] == ["SHA512"]


def test_token_is_six_digits_and_verifies(code: TotpCode) -> None:
    token = code.generate_token()
    assert len(token) == 6
    assert token.isdigit()
    assert code.verify(token)


def test_verify_allows_one_step_of_drift(code: TotpCode) -> None:
    token = code.generate_token(for_time=1_000_000)
    assert code.verify(token, for_time=1_000_000 + 30)
    assert code.verify(token, for_time=1_000_000 - 30)
    assert not code.verify(token, for_time=1_000_000 + 120)


def test_module_level_token_matches_code(code: TotpCode) -> None:
    assert code.verify(generate_token(SECRET, ISSUER, ACCOUNT))


def test_algorithm_is_normalized() -> None:
    assert TotpSpec(secret=SECRET, account=ACCOUNT, algorithm="sha256").algorithm == "SHA256"


@pytest.mark.parametrize(
    "kwargs",
    [
        {"secret": "too short", "account": ACCOUNT},
        {"secret": SECRET, "account": ""},
        {"secret": SECRET, "account": "a:b"},
        {"secret": SECRET, "account": ACCOUNT, "issuer": "Mc:Cormick"},
        {"secret": SECRET, "account": ACCOUNT, "algorithm": "MD5"},
        {"secret": SECRET, "account": ACCOUNT, "digits": 4},
        {"secret": SECRET, "account": ACCOUNT, "interval": 0},
    ],
)
def test_invalid_totp_spec(kwargs) -> None:
    with pytest.raises(ValueError):
        TotpSpec(**kwargs)


def test_generated_secret_is_usable() -> None:
    secret = generate_secret()
    assert secret != generate_secret()
    TotpSpec(secret=secret, account=ACCOUNT)


# ---------- QR ----------

def test_qr_spec_normalizes_ecc() -> None:
    assert QRSpec(data="otpauth://totp/x", ecc="q").ecc == "Q"


@pytest.mark.parametrize(
    "kwargs",
    [
        {"data": "   "},
        {"data": "x", "ecc": "Z"},
        {"data": "x", "box_size": 0},
        {"data": "x", "border": -1},
    ],
)
def test_invalid_qr_spec(kwargs) -> None:
    with pytest.raises(ValueError):
        QRSpec(**kwargs)


def test_qr_render_array_layout() -> None:
    qr = QRCodeImage(QRSpec(data="otpauth://totp/x?secret=ABC", box_size=3, border=2))
    rows, cols = qr.module_shape
    assert rows == cols
    arr = qr.render_array()
    assert arr.shape == qr.pixel_shape == ((rows + 4) * 3, (cols + 4) * 3)
    assert arr.dtype == np.uint8
    # quiet zone is light, the finder pattern corner is dark
    assert arr[0, 0] == 255
    assert arr[6, 6] == 0


def test_qr_render_array_custom_intensities() -> None:
    qr = QRCodeImage(QRSpec(data="otpauth://totp/x?secret=ABC", box_size=1, border=1))
    default = qr.render_array()
    swapped = qr.render_array(fg=255, bg=0)
    assert np.array_equal(swapped, 255 - default)
    assert qr.render_pil(fg=40, bg=200).getpixel((0, 0)) == 200


def test_higher_ecc_needs_more_modules() -> None:
    low = make_qr(SECRET, ISSUER, ACCOUNT, ecc="L")
    high = make_qr(SECRET, ISSUER, ACCOUNT, ecc="H")
    assert high.spec.ecc == "H"
    assert high.module_shape[0] > low.module_shape[0]


def test_to_grayscale_matches_decoded_raster() -> None:
    qr = make_qr(SECRET, ISSUER, ACCOUNT, box_size=2)
    direct = qr.to_grayscale()
    decoded = generate_qr_raster(SECRET, ISSUER, ACCOUNT, box_size=2)
    assert (direct.width, direct.height) == (decoded.width, decoded.height)
    assert np.array_equal(direct.pixels, decoded.pixels)


def test_oversized_payload_raises_decode_error() -> None:
    with pytest.raises(DecodeError):
        QRCodeImage(QRSpec(data="x" * 5000))


def test_create_qr_png_returns_png() -> None:
    assert create_qr_png(SECRET, ISSUER, ACCOUNT).startswith(b"\x89PNG\r\n\x1a\n")


def test_raster_matches_rendered_qr() -> None:
    image = generate_qr_raster(SECRET, ISSUER, ACCOUNT)
    expected = make_qr(SECRET, ISSUER, ACCOUNT, box_size=2).render_array()
    assert (image.height, image.width) == expected.shape
    assert np.array_equal(image.pixels, expected)


def test_print_totp_qr_renders_art_and_captions() -> None:
    sink = io.StringIO()
    print_totp_qr(SECRET, ISSUER, ACCOUNT, RenderConfig(size_mode=SizeMode.MINI), sink)
    lines = sink.getvalue().splitlines()
    assert lines[-len(CAPTIONS):] == list(CAPTIONS)
    raster = lines[:-len(CAPTIONS)]
    assert raster
    assert len({len(line) for line in raster}) == 1
    assert any("█" in line for line in raster)


# ---------- Command line ----------

def test_cli_prints_code_and_token(capsys: pytest.CaptureFixture[str]) -> None:
    status = main([ACCOUNT, "--secret", SECRET, "--issuer", ISSUER, "--mini", "--token"])
    out = capsys.readouterr().out
    assert status == 0
    assert CAPTIONS[1] in out
    assert "Current code: " in out


def test_cli_generates_secret_when_missing(capsys: pytest.CaptureFixture[str]) -> None:
    assert main([ACCOUNT, "--no-captions"]) == 0
    out = capsys.readouterr().out
    assert out.startswith("Generated secret: ")
    assert CAPTIONS[1] not in out


def test_cli_rejects_short_secret(capsys: pytest.CaptureFixture[str]) -> None:
    assert main([ACCOUNT, "--secret", "short"]) == 1
    assert "Scan" not in capsys.readouterr().out
