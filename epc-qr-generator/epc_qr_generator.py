#!/usr/bin/env python3
"""
EPC QR Code (SEPA Credit Transfer, "GiroCode") Generator
Based on EPC069-12 Quick Response Code Guidelines, version 002
"""

import argparse
import asyncio
import base64
import io
import json
import logging
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import qrcode
from qrcode.constants import (
    ERROR_CORRECT_H,
    ERROR_CORRECT_L,
    ERROR_CORRECT_M,
    ERROR_CORRECT_Q,
)

logger = logging.getLogger(__name__)

OUTPUT_TYPES = ("base64", "buffer", "utf8")

DATA_URL_PREFIX = "data:image/png;base64,"

# ---------- Errors ----------

class EPCQRError(Exception):
    """Base class for everything raised by this module."""


class EPCValidationError(EPCQRError, ValueError):
    """A payment field does not have the shape the EPC guidelines require."""


class MissingRequiredFields(EPCValidationError):
    pass


class InvalidBic(EPCValidationError):
    pass


class InvalidIban(EPCValidationError):
    pass


class InvalidAmount(EPCValidationError):
    pass


class InvalidCurrency(EPCValidationError):
    pass


class InvalidPurposeCode(EPCValidationError):
    pass


class UnsupportedOutputType(EPCQRError, ValueError):
    pass


class RenderingFailed(EPCQRError, RuntimeError):
    pass

# ---------- Data Model ----------

# camelCase spellings accepted in JSON input
PAYMENT_FIELD_ALIASES = {
    "purposeCode": "purpose_code",
    "remittanceInfo": "remittance_info",
    "beneficiaryToOriginator": "beneficiary_to_originator",
}


@dataclass(frozen=True)
class PaymentRecord:
    name: str                                         # Beneficiary name, max 70 chars
    iban: str                                         # Beneficiary account
    bic: Optional[str] = None                         # Beneficiary bank
    amount: Optional[str] = None                      # Decimal text, e.g. "10.50"
    currency: Optional[str] = None                    # ISO 4217, "EUR" when unset
    purpose_code: Optional[str] = None                # ISO 20022 purpose code
    remittance_info: Optional[str] = None             # Unstructured, max 140 chars
    beneficiary_to_originator: Optional[str] = None   # Note to payer, max 70 chars

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "PaymentRecord":
        known = {f.name for f in fields(PaymentRecord)}
        kwargs: Dict[str, Any] = {}
        for key, value in data.items():
            attr = PAYMENT_FIELD_ALIASES.get(key, key)
            if attr not in known:
                raise ValueError(f"Unknown payment field '{key}'")
            # Taken verbatim, never coerced to text
            if value is not None and not isinstance(value, str):
                raise ValueError(f"Payment field '{key}' must be a string")
            kwargs[attr] = value
        kwargs.setdefault("name", "")
        kwargs.setdefault("iban", "")
        return PaymentRecord(**kwargs)


@dataclass(frozen=True)
class RenderOptions:
    error_correction_level: str = "M"   # L, M, Q or H
    margin: int = 4                     # Quiet zone, in modules
    scale: int = 4                      # Pixels per module

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "RenderOptions":
        known = {f.name for f in fields(RenderOptions)}
        for key in data:
            if key not in known:
                raise ValueError(f"Unknown render option '{key}'")
        return RenderOptions(**data)

# ---------- Validation ----------

BIC_RE = re.compile(r"[A-Z]{6}[A-Z0-9]{2}([A-Z0-9]{3})?")
IBAN_RE = re.compile(r"[A-Z]{2}[0-9]{2}[A-Z0-9]{1,30}")
AMOUNT_RE = re.compile(r"[0-9]+(\.[0-9]{1,2})?")
CURRENCY_RE = re.compile(r"[A-Z]{3}")
PURPOSE_CODE_RE = re.compile(r"[A-Z]{4}")


def validate_record(record: PaymentRecord) -> None:
    """
    Check a payment record against the EPC field formats.

    Optional fields are only checked when set. Stops at the first problem.

    Raises:
        EPCValidationError: one of its subclasses, naming the bad field
    """
    if not record.name or not record.iban:
        raise MissingRequiredFields("Missing required fields: name and iban")
    if record.bic and not BIC_RE.fullmatch(record.bic):
        raise InvalidBic("Invalid BIC format")
    # No mod-97 checksum, shape only
    if not IBAN_RE.fullmatch(record.iban):
        raise InvalidIban("Invalid IBAN format")
    if record.amount and not AMOUNT_RE.fullmatch(record.amount):
        raise InvalidAmount("Invalid amount format")
    # Any three capitals pass, e.g. "ZZZ"
    if record.currency and not CURRENCY_RE.fullmatch(record.currency):
        raise InvalidCurrency("Invalid currency code")
    if record.purpose_code and not PURPOSE_CODE_RE.fullmatch(record.purpose_code):
        raise InvalidPurposeCode("Invalid purpose code format")

# ---------- Payload ----------

FIELD_NAMES = {
    "01": "Service Tag",
    "02": "Version",
    "03": "Character Set",
    "04": "Identification Code",
    "05": "BIC",
    "06": "Beneficiary Name",
    "07": "Beneficiary IBAN",
    "08": "Currency and Amount",
    "09": "Purpose Code",
    "10": "Remittance Information",
    "11": "Beneficiary to Originator Information",
}


def format_payload(record: PaymentRecord) -> str:
    """
    Build the EPC payload text for an already validated record.

    Args:
        record: Payment record that passed validate_record()

    Returns:
        Eleven lines joined by LF, without a trailing LF
    """
    lines = [
        "BCD",                                                  # 1. Service Tag
        "002",                                                  # 2. Version
        "1",                                                    # 3. Character set (UTF-8)
        "SCT",                                                  # 4. SEPA Credit Transfer
        record.bic or "",                                       # 5. BIC
        record.name,                                            # 6. Beneficiary name
        record.iban,                                            # 7. Beneficiary IBAN
        (record.currency or "EUR") + (record.amount or "1"),    # 8. e.g. "EUR10.00", no separator
        record.purpose_code or "",                              # 9. Purpose code
        record.remittance_info or "",                           # 10. Remittance information
        record.beneficiary_to_originator or "",                 # 11. Note to payer
    ]
    return "\n".join(lines)


def parse_payload(payload: str) -> List[Dict[str, str]]:
    """
    Split an EPC payload back into its numbered fields
    (Useful for validation and debugging)

    Args:
        payload: EPC payload string

    Returns:
        List of {"id", "name", "value"} dictionaries, in payload order
    """
    lines = payload.split("\n")
    if len(lines) != len(FIELD_NAMES):
        raise ValueError(
            f"EPC payload must have {len(FIELD_NAMES)} lines, got {len(lines)}"
        )

    result = []
    for i, value in enumerate(lines, start=1):
        field_id = f"{i:02d}"
        result.append({"id": field_id, "name": FIELD_NAMES[field_id], "value": value})
    return result

# ---------- Rendering ----------

class QRCodeRenderer:
    """
    Turns payload text into a PNG QR code using the qrcode library
    """

    ERROR_CORRECTION_LEVELS = {
        "L": ERROR_CORRECT_L,
        "M": ERROR_CORRECT_M,
        "Q": ERROR_CORRECT_Q,
        "H": ERROR_CORRECT_H,
    }

    def render_image(self, text: str, options: RenderOptions):
        """
        Build the QR code image for a payload

        Args:
            text: Payload to encode
            options: Error correction level, margin and scale

        Returns:
            qrcode image object (PIL backed)
        """
        try:
            error_correction = self.ERROR_CORRECTION_LEVELS[options.error_correction_level]
        except KeyError:
            raise ValueError(
                f"Unknown error correction level: {options.error_correction_level}"
            ) from None

        qr = qrcode.QRCode(
            version=None,  # Let it auto-determine size
            error_correction=error_correction,
            box_size=options.scale,
            border=options.margin,
        )

        qr.add_data(text)
        qr.make(fit=True)

        return qr.make_image(fill_color="black", back_color="white")

    def render_to_binary(self, text: str, options: RenderOptions) -> bytes:
        img = self.render_image(text, options)
        buffer = io.BytesIO()
        img.save(buffer, format="PNG")
        return buffer.getvalue()

    def render_to_data_url(self, text: str, options: RenderOptions) -> str:
        png = self.render_to_binary(text, options)
        return DATA_URL_PREFIX + base64.b64encode(png).decode("ascii")

# ---------- Generator ----------

class EPCQRGenerator:
    """
    Validates payment data, builds the EPC payload and renders it
    """

    def __init__(
        self,
        options: Optional[RenderOptions] = None,
        renderer: Optional[QRCodeRenderer] = None,
        **overrides: Any,
    ):
        """
        Initialize the generator

        Args:
            options: Render options, defaults to M / margin 4 / scale 4
            renderer: QR renderer, a QRCodeRenderer unless given
            **overrides: error_correction_level, margin or scale on top of options
        """
        base = options or RenderOptions()
        self.options = RenderOptions(
            error_correction_level=overrides.pop("error_correction_level", base.error_correction_level),
            margin=overrides.pop("margin", base.margin),
            scale=overrides.pop("scale", base.scale),
        )
        if overrides:
            raise TypeError(f"Unknown render options: {', '.join(sorted(overrides))}")
        self.renderer = renderer or QRCodeRenderer()

    def build_payload(self, record: PaymentRecord) -> str:
        validate_record(record)
        payload = format_payload(record)
        logger.debug("Built EPC payload (%d characters)", len(payload))
        return payload

    async def generate(
        self, record: PaymentRecord, output_type: str = "base64"
    ) -> Union[str, bytes]:
        """
        Generate the QR code for a payment

        Args:
            record: Payment data
            output_type: "base64" (PNG data URL), "buffer" (PNG bytes)
                or "utf8" (payload text)

        Returns:
            str for "base64" and "utf8", bytes for "buffer"

        Raises:
            EPCValidationError: record failed validation (not wrapped)
            UnsupportedOutputType: output_type is not one of OUTPUT_TYPES
            RenderingFailed: the renderer raised
        """
        payload = self.build_payload(record)

        if output_type == "utf8":
            return payload
        if output_type == "base64":
            render = self.renderer.render_to_data_url
        elif output_type == "buffer":
            render = self.renderer.render_to_binary
        else:
            raise UnsupportedOutputType(f"Unsupported output type: {output_type}")

        logger.debug("Rendering EPC payload as %s", output_type)
        try:
            return await asyncio.to_thread(render, payload, self.options)
        except Exception as err:
            raise RenderingFailed(f"Failed to generate QR code: {err}") from err

    def generate_sync(
        self, record: PaymentRecord, output_type: str = "base64"
    ) -> Union[str, bytes]:
        """Run generate() for callers without an event loop."""
        return asyncio.run(self.generate(record, output_type))

# ---------- Configuration ----------

@dataclass
class Config:
    payment: Dict[str, Any]                                   # PaymentRecord fields
    render: Dict[str, Any] = field(default_factory=dict)      # RenderOptions fields
    output_type: str = "utf8"
    output_file: str = "epc.png"                              # Used for "buffer" output

    @staticmethod
    def load(path: Path) -> "Config":
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        if "payment" not in data:
            raise ValueError("Missing 'payment' in config JSON")
        return Config(
            payment=dict(data["payment"]),
            render=dict(data.get("render", {})),
            output_type=data.get("output_type", "utf8"),
            output_file=data.get("output_file", "epc.png"),
        )

# ---------- Orchestration ----------

def run(cfg: Config, show_structure: bool = False) -> Union[str, bytes]:
    record = PaymentRecord.from_dict(cfg.payment)
    generator = EPCQRGenerator(RenderOptions.from_dict(cfg.render))

    result = generator.generate_sync(record, cfg.output_type)

    if cfg.output_type == "buffer":
        Path(cfg.output_file).write_bytes(result)
        print(f"QR Code saved to: {cfg.output_file}")
    else:
        print(result)

    if show_structure:
        print("\nParsed Structure:")
        parsed = parse_payload(generator.build_payload(record))
        print(json.dumps(parsed, indent=2, ensure_ascii=False))

    return result


def main(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(description="Generate EPC (SEPA Credit Transfer) QR codes.")
    parser.add_argument("--config", default="epc_config.json", help="Path to JSON config file")
    parser.add_argument("--output-type", choices=OUTPUT_TYPES, help="Override output type from config")
    parser.add_argument("--output-file", help="PNG file written for 'buffer' output")
    parser.add_argument("--error-correction", choices=sorted(QRCodeRenderer.ERROR_CORRECTION_LEVELS),
                        help="QR error correction level")
    parser.add_argument("--margin", type=int, help="Quiet zone in modules")
    parser.add_argument("--scale", type=int, help="Pixels per module")
    parser.add_argument("--parse", action="store_true", help="Also print the parsed payload structure")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    cfg = Config.load(Path(args.config))
    if args.output_type:
        cfg.output_type = args.output_type
    if args.output_file:
        cfg.output_file = args.output_file
    if args.error_correction:
        cfg.render["error_correction_level"] = args.error_correction
    if args.margin is not None:
        cfg.render["margin"] = args.margin
    if args.scale is not None:
        cfg.render["scale"] = args.scale

    try:
        run(cfg, show_structure=args.parse)
    except EPCQRError as e:
        raise SystemExit(f"Error: {e}") from e


if __name__ == "__main__":
    main()
