"""
Packaging cart items.

A cart item is one app queued for deployment. There are two kinds, told
apart by app_source:

    win32  Win32CartItem  packaged (.intunewin) by the packaging workflow
    store  StoreCartItem  deployed straight to Intune as a Graph winGetApp

Consumers match on the concrete class; there is no optional-field duck typing.
"""

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

from intuneget.catalog.protocol import Installer
from intuneget.services.detection_rules import (
    generate_detection_rules,
    generate_install_command,
    generate_uninstall_command,
)


def _new_id() -> str:
    return str(uuid.uuid4())


def _now() -> str:
    return datetime.now(UTC).isoformat()


@dataclass
class Win32CartItem:
    winget_id: str
    display_name: str
    publisher: str
    version: str
    architecture: str
    install_scope: str
    installer_type: str
    installer_url: str
    installer_sha256: str
    install_command: str
    uninstall_command: str
    detection_rules: list[dict[str, Any]]
    description: str | None = None
    assignments: list[dict[str, Any]] = field(default_factory=list)
    categories: list[dict[str, Any]] = field(default_factory=list)
    force_create: bool = False
    id: str = field(default_factory=_new_id)
    added_at: str = field(default_factory=_now)
    app_source: Literal["win32"] = "win32"


@dataclass
class StoreCartItem:
    winget_id: str
    display_name: str
    publisher: str
    version: str
    package_identifier: str
    install_experience: Literal["user", "system"] = "user"
    description: str | None = None
    assignments: list[dict[str, Any]] = field(default_factory=list)
    categories: list[dict[str, Any]] = field(default_factory=list)
    force_create: bool = False
    id: str = field(default_factory=_new_id)
    added_at: str = field(default_factory=_now)
    app_source: Literal["store"] = "store"


CartItem = Win32CartItem | StoreCartItem


class CartItemError(ValueError):
    """A cart item payload is malformed."""


def create_cart_item(
    winget_id: str,
    display_name: str,
    publisher: str,
    version: str,
    installer: Installer,
    install_scope: str = "machine",
) -> Win32CartItem:
    """Build a Win32 cart item with installer-derived commands and detection rules."""
    return Win32CartItem(
        winget_id=winget_id,
        display_name=display_name,
        publisher=publisher,
        version=version,
        architecture=installer.architecture,
        install_scope=install_scope,
        installer_type=installer.type,
        installer_url=installer.url,
        installer_sha256=installer.sha256,
        install_command=generate_install_command(installer, install_scope),
        uninstall_command=generate_uninstall_command(installer, display_name),
        detection_rules=generate_detection_rules(installer, display_name, winget_id, version),
    )


def create_store_cart_item(
    package_identifier: str,
    display_name: str,
    publisher: str,
    version: str,
    install_experience: Literal["user", "system"] = "user",
) -> StoreCartItem:
    """Build a Store cart item. The Store product id doubles as winget_id."""
    return StoreCartItem(
        winget_id=package_identifier,
        display_name=display_name,
        publisher=publisher,
        version=version,
        package_identifier=package_identifier,
        install_experience=install_experience,
    )


def cart_item_to_dict(item: CartItem) -> dict[str, Any]:
    """Serialize to the camelCase wire shape."""
    base = {
        "id": item.id,
        "appSource": item.app_source,
        "wingetId": item.winget_id,
        "displayName": item.display_name,
        "publisher": item.publisher,
        "version": item.version,
        "description": item.description,
        "assignments": item.assignments,
        "categories": item.categories,
        "forceCreate": item.force_create,
        "addedAt": item.added_at,
    }
    match item:
        case Win32CartItem():
            base.update(
                {
                    "architecture": item.architecture,
                    "installScope": item.install_scope,
                    "installerType": item.installer_type,
                    "installerUrl": item.installer_url,
                    "installerSha256": item.installer_sha256,
                    "installCommand": item.install_command,
                    "uninstallCommand": item.uninstall_command,
                    "detectionRules": item.detection_rules,
                }
            )
        case StoreCartItem():
            base.update(
                {
                    "packageIdentifier": item.package_identifier,
                    "installExperience": item.install_experience,
                }
            )
    return base


def cart_item_from_dict(data: dict[str, Any]) -> CartItem:
    """Parse the camelCase wire shape.

    A missing appSource means win32; carts persisted before Store support
    carry no discriminator.

    Raises:
        CartItemError: On an unknown appSource or missing required fields.
    """
    source = data.get("appSource") or "win32"
    try:
        common = {
            "winget_id": data["wingetId"],
            "display_name": data["displayName"],
            "publisher": data.get("publisher") or "",
            "version": data.get("version") or "",
            "description": data.get("description"),
            "assignments": list(data.get("assignments") or []),
            "categories": list(data.get("categories") or []),
            "force_create": bool(data.get("forceCreate", False)),
        }
        if data.get("id"):
            common["id"] = data["id"]
        if data.get("addedAt"):
            common["added_at"] = data["addedAt"]

        match source:
            case "win32":
                return Win32CartItem(
                    **common,
                    architecture=data.get("architecture") or "x64",
                    install_scope=data.get("installScope") or "machine",
                    installer_type=data.get("installerType") or "exe",
                    installer_url=data["installerUrl"],
                    installer_sha256=data.get("installerSha256") or "",
                    install_command=data.get("installCommand") or "",
                    uninstall_command=data.get("uninstallCommand") or "",
                    detection_rules=list(data.get("detectionRules") or []),
                )
            case "store":
                experience = data.get("installExperience") or "user"
                if experience not in ("user", "system"):
                    raise CartItemError(f"Invalid installExperience: {experience}")
                return StoreCartItem(
                    **common,
                    package_identifier=data.get("packageIdentifier") or data["wingetId"],
                    install_experience=experience,
                )
            case _:
                raise CartItemError(f"Unknown appSource: {source}")
    except KeyError as e:
        raise CartItemError(f"Cart item missing field: {e.args[0]}") from e
