"""
Intune detection rules and install/uninstall commands.

Detection rules are plain dicts in the Intune Win32 shape the packaging
workflow consumes (camelCase keys, "type" discriminator):

    msi       {"productCode", "productVersionOperator", "productVersion"?}
    file      {"path", "fileOrFolderName", "detectionType", "check32BitOn64System", ...}
    registry  {"keyPath", "valueName", "detectionType", "operator", "detectionValue", ...}
    script    {"scriptContent", "enforceSignatureCheck", "runAs32Bit"}

generate_* derive rules and commands from a catalog installer;
convert_sccm_detection_rules() maps SCCM detection clauses onto the same shape.
"""

import re
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Any
from urllib.parse import unquote, urlparse

from intuneget.catalog.protocol import Installer

MSI_TYPES = frozenset({"msi", "wix"})
MSIX_TYPES = frozenset({"msix", "appx"})
REGISTRY_MARKER_TYPES = frozenset({"exe", "inno", "nullsoft", "burn"})

DEFAULT_SILENT_ARGS = {
    "inno": "/VERYSILENT /SUPPRESSMSGBOXES /NORESTART /SP-",
    "nullsoft": "/S",
    "burn": "/quiet /norestart",
    "exe": "/S",
}

MARKER_ROOT = r"SOFTWARE\IntuneGet\Apps"
MAX_FOLDER_NAME_LENGTH = 64
MIN_SCRIPT_LENGTH = 10

_INVALID_FOLDER_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')

# SCCM operator names -> Intune operator names
_OPERATORS = {
    "equals": "equal",
    "equal": "equal",
    "notequals": "notEqual",
    "notequal": "notEqual",
    "greaterthan": "greaterThan",
    "greaterequals": "greaterThanOrEqual",
    "greaterthanorequal": "greaterThanOrEqual",
    "lessthan": "lessThan",
    "lessequals": "lessThanOrEqual",
    "lessthanorequal": "lessThanOrEqual",
}

_HIVES = {
    "hklm": "HKEY_LOCAL_MACHINE",
    "hkey_local_machine": "HKEY_LOCAL_MACHINE",
    "localmachine": "HKEY_LOCAL_MACHINE",
    "hkcu": "HKEY_CURRENT_USER",
    "hkey_current_user": "HKEY_CURRENT_USER",
    "currentuser": "HKEY_CURRENT_USER",
    "hkcr": "HKEY_CLASSES_ROOT",
    "hkey_classes_root": "HKEY_CLASSES_ROOT",
}


@dataclass
class ValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def sanitize_folder_name(name: str) -> str:
    """Make a display name usable as a Windows folder name."""
    cleaned = _INVALID_FOLDER_CHARS.sub("", name).strip().rstrip(".")
    cleaned = re.sub(r"\s+", " ", cleaned)[:MAX_FOLDER_NAME_LENGTH].strip()
    return cleaned or "Application"


def registry_marker_key(winget_id: str, scope: str | None = "machine") -> str:
    """Registry key the packaging wrapper writes after a successful install."""
    hive = "HKEY_CURRENT_USER" if scope == "user" else "HKEY_LOCAL_MACHINE"
    safe_id = re.sub(r"[.\-]", "_", winget_id)
    return f"{hive}\\{MARKER_ROOT}\\{safe_id}"


def generate_detection_rules(
    installer: Installer,
    display_name: str,
    winget_id: str | None = None,
    version: str | None = None,
) -> list[dict[str, Any]]:
    """Derive one detection rule from installer metadata.

    Empty when nothing identifies the install: no product code, marker or
    family name, and no display name to build a folder rule from.
    """
    if installer.type in MSI_TYPES and installer.product_code:
        rule: dict[str, Any] = {
            "type": "msi",
            "productCode": installer.product_code,
            "productVersionOperator": "greaterThanOrEqual",
        }
        if version:
            rule["productVersion"] = version
        return [rule]

    if installer.type in REGISTRY_MARKER_TYPES and winget_id and version:
        return [
            {
                "type": "registry",
                "keyPath": registry_marker_key(winget_id, installer.scope),
                "valueName": "Version",
                "detectionType": "version",
                "operator": "greaterThanOrEqual",
                "detectionValue": version,
                "check32BitOn64System": False,
            }
        ]

    if installer.type in MSIX_TYPES and installer.package_family_name:
        family = installer.package_family_name
        package_name = family.split("_", 1)[0]
        script = (
            f'$pkg = Get-AppxPackage -Name "{package_name}" -ErrorAction SilentlyContinue\n'
            f'if ($pkg -and $pkg.PackageFamilyName -eq "{family}") {{\n'
            '    Write-Output "Detected"\n'
            "    exit 0\n"
            "}\n"
            "exit 1\n"
        )
        return [
            {
                "type": "script",
                "scriptContent": script,
                "enforceSignatureCheck": False,
                "runAs32Bit": False,
            }
        ]

    if not display_name.strip():
        return []
    return [folder_detection_rule(display_name, installer.architecture, installer.scope)]


def folder_detection_rule(display_name: str, architecture: str, scope: str | None) -> dict[str, Any]:
    """Folder-exists rule under the install root for the scope and architecture."""
    if scope == "user":
        base_path, check_32 = r"%LOCALAPPDATA%\Programs", False
    elif architecture == "x86":
        base_path, check_32 = "%ProgramFiles(x86)%", True
    else:
        base_path, check_32 = "%ProgramFiles%", False

    return {
        "type": "file",
        "path": base_path,
        "fileOrFolderName": sanitize_folder_name(display_name),
        "detectionType": "exists",
        "check32BitOn64System": check_32,
    }


def installer_file_name(installer: Installer) -> str:
    """File name the installer is saved under, with an extension matching its type."""
    path = PurePosixPath(unquote(urlparse(installer.url).path))
    name = path.name or "installer"
    if path.suffix:
        return name
    match installer.type:
        case "msi" | "wix":
            return f"{name}.msi"
        case "msix" | "appx":
            return f"{name}.{installer.type}"
        case "zip":
            return f"{name}.zip"
        case _:
            return f"{name}.exe"


def generate_install_command(installer: Installer, scope: str | None = None) -> str:
    """Silent install command for an installer, run from the package root."""
    effective_scope = scope or installer.scope or "machine"
    file_name = installer_file_name(installer)

    match installer.type:
        case "msi" | "wix":
            all_users = 'ALLUSERS=""' if effective_scope == "user" else "ALLUSERS=1"
            extra = f" {installer.silent_args}" if installer.silent_args else ""
            return f'msiexec /i "{file_name}" /qn {all_users} /norestart{extra}'
        case "msix" | "appx":
            return (
                "powershell.exe -ExecutionPolicy Bypass -Command "
                f"\"Add-AppxPackage -Path '.\\{file_name}'\""
            )
        case "zip":
            return (
                "powershell.exe -ExecutionPolicy Bypass -Command "
                f"\"Expand-Archive -Path '.\\{file_name}' -DestinationPath $env:ProgramFiles -Force\""
            )
        case _:
            args = installer.silent_args or DEFAULT_SILENT_ARGS.get(installer.type, "")
            return f'"{file_name}" {args}'.rstrip()


def generate_uninstall_command(installer: Installer, display_name: str | None = None) -> str:
    """Uninstall command, or a marker the packaging wrapper resolves at install time.

    MSIX_UNINSTALL:<family> and REGISTRY_UNINSTALL:<name> are expanded by the
    wrapper script (Remove-AppxPackage / registry UninstallString lookup).
    """
    match installer.type:
        case "msi" | "wix":
            product_code = installer.product_code or "{PRODUCT_CODE}"
            return f"msiexec /x {product_code} /qn /norestart"
        case "msix" | "appx" if installer.package_family_name:
            return f"MSIX_UNINSTALL:{installer.package_family_name}"
        case _ if display_name:
            return f"REGISTRY_UNINSTALL:{display_name}"
        case _:
            return "uninstall.exe /S"


def validate_detection_rules(rules: list[dict[str, Any]]) -> ValidationResult:
    """Check rules are complete enough for Intune to accept them."""
    errors: list[str] = []
    warnings: list[str] = []

    if not rules:
        return ValidationResult(valid=False, errors=["At least one detection rule is required"])

    for rule in rules:
        match rule.get("type"):
            case "msi":
                if not rule.get("productCode"):
                    errors.append("MSI detection rule requires a product code")
            case "file":
                if not rule.get("path") or not rule.get("fileOrFolderName"):
                    errors.append(
                        "File/folder detection rule requires path and file or folder name"
                    )
                elif rule.get("detectionType") == "exists":
                    warnings.append(
                        f"Folder detection for {rule['fileOrFolderName']} does not check the version"
                    )
            case "registry":
                if not rule.get("keyPath"):
                    errors.append("Registry detection rule requires key path")
            case "script":
                content = (rule.get("scriptContent") or "").strip()
                if len(content) < MIN_SCRIPT_LENGTH:
                    errors.append("Script detection rule requires valid script content")
            case other:
                errors.append(f"Unsupported detection rule type: {other}")

    return ValidationResult(valid=not errors, errors=errors, warnings=warnings)


def _operator(value: Any) -> str:
    return _OPERATORS.get(str(value or "").replace(" ", "").lower(), "equal")


def _convert_sccm_clause(clause: dict[str, Any]) -> dict[str, Any] | None:
    kind = str(clause.get("type") or clause.get("Type") or "").lower()

    def get(*keys: str) -> Any:
        for key in keys:
            if clause.get(key) not in (None, ""):
                return clause[key]
        return None

    match kind:
        case "msi" | "windowsinstaller":
            product_code = get("productCode", "ProductCode")
            if not product_code:
                return None
            rule: dict[str, Any] = {"type": "msi", "productCode": product_code}
            product_version = get("productVersion", "ProductVersion")
            if product_version:
                rule["productVersionOperator"] = _operator(get("operator", "Operator"))
                rule["productVersion"] = product_version
            return rule

        case "file" | "folder":
            path = get("path", "Path")
            name = get("fileName", "FileName", "folderName", "FolderName", "fileOrFolderName")
            if not path or not name:
                return None
            rule = {
                "type": "file",
                "path": path,
                "fileOrFolderName": name,
                "detectionType": "exists",
                "check32BitOn64System": not bool(get("is64Bit", "Is64Bit")),
            }
            value = get("value", "Value")
            if value is not None:
                prop = str(get("property", "Property") or "version").lower()
                rule["detectionType"] = "version" if prop == "version" else prop
                rule["operator"] = _operator(get("operator", "Operator"))
                rule["detectionValue"] = str(value)
            return rule

        case "registry":
            key = get("keyPath", "KeyPath", "key", "Key")
            if not key:
                return None
            hive = _HIVES.get(str(get("hive", "Hive") or "").lower())
            if hive and not str(key).upper().startswith("HKEY_"):
                key = f"{hive}\\{str(key).lstrip(chr(92))}"
            rule = {
                "type": "registry",
                "keyPath": key,
                "valueName": get("valueName", "ValueName") or "",
                "detectionType": "exists",
                "check32BitOn64System": not bool(get("is64Bit", "Is64Bit")),
            }
            value = get("value", "Value")
            if value is not None:
                rule["detectionType"] = "string"
                rule["operator"] = _operator(get("operator", "Operator"))
                rule["detectionValue"] = str(value)
            return rule

        case "script":
            script = get("scriptText", "ScriptText", "scriptContent")
            language = str(get("scriptLanguage", "ScriptLanguage") or "powershell").lower()
            # Intune custom detection scripts are PowerShell only
            if not script or language != "powershell":
                return None
            return {
                "type": "script",
                "scriptContent": script,
                "enforceSignatureCheck": False,
                "runAs32Bit": bool(get("runAs32Bit", "RunAs32Bit")),
            }

        case _:
            return None


def convert_sccm_detection_rules(clauses: list[dict[str, Any]] | None) -> list[dict[str, Any]]:
    """Convert SCCM detection clauses, dropping the ones Intune cannot express."""
    converted = []
    for clause in clauses or []:
        if not isinstance(clause, dict):
            continue
        rule = _convert_sccm_clause(clause)
        if rule is not None:
            converted.append(rule)
    return converted
