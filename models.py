"""
Data models for Kiss2FA.
"""
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Dict, Any

DEFAULT_ENTRY_ICON = '🔐'
DEFAULT_FOLDER_ICON = '📁'
DEFAULT_FOLDER_COLOR = '#3b82f6'
DEFAULT_VAULT_NAME = 'My Vault'

EXPORT_FORMAT = 'Kiss2FA-Vault-v1'
SUPPORTED_IMPORT_FORMATS = ('Kiss2FA-Vault-v1', 'xVault-Vault-v1')

DEFAULT_PERIOD = 30
DEFAULT_DIGITS = 6


def positive_int(name: str, value: Any) -> int:
    """
    Check a period or digit count.

    Raises:
        ValueError: If value is not a positive integer (bools are rejected)
    """
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValueError(f"{name} must be a positive integer, got {value!r}")
    return value


@dataclass
class TOTPEntry:
    """A two-factor account stored in the vault."""
    id: str
    name: str
    secret: str
    icon: str = DEFAULT_ENTRY_ICON
    period: int = DEFAULT_PERIOD
    digits: int = DEFAULT_DIGITS
    folder_id: Optional[str] = None

    @property
    def is_custom_icon(self) -> bool:
        """Whether the icon is an embedded image rather than a glyph."""
        return self.icon.startswith('data:image')

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'id': self.id,
            'name': self.name,
            'secret': self.secret,
            'icon': self.icon,
            'isCustomIcon': self.is_custom_icon,
            'period': self.period,
            'digits': self.digits,
        }
        if self.folder_id is not None:
            data['folderId'] = self.folder_id
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TOTPEntry':
        """
        Build an entry from its wire form; missing period/digits take defaults.

        Raises:
            KeyError: If id, name or secret is missing
            ValueError: If period or digits is present but not a positive integer
        """
        period = data.get('period')
        digits = data.get('digits')
        return cls(
            id=data['id'],
            name=data['name'],
            secret=data['secret'],
            icon=data.get('icon') or DEFAULT_ENTRY_ICON,
            period=DEFAULT_PERIOD if period is None else positive_int('period', period),
            digits=DEFAULT_DIGITS if digits is None else positive_int('digits', digits),
            folder_id=data.get('folderId'),
        )


@dataclass
class Folder:
    """A folder grouping entries; folders nest through parent_id."""
    id: str
    name: str
    icon: str = DEFAULT_FOLDER_ICON
    color: str = DEFAULT_FOLDER_COLOR
    is_expanded: bool = True
    parent_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'id': self.id,
            'name': self.name,
            'icon': self.icon,
            'color': self.color,
            'isExpanded': self.is_expanded,
        }
        if self.parent_id is not None:
            data['parentId'] = self.parent_id
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Folder':
        return cls(
            id=data['id'],
            name=data['name'],
            icon=data.get('icon') or DEFAULT_FOLDER_ICON,
            color=data.get('color') or DEFAULT_FOLDER_COLOR,
            is_expanded=bool(data.get('isExpanded', True)),
            parent_id=data.get('parentId'),
        )


@dataclass
class User:
    """Account owning one encrypted vault."""
    id: int
    login_id: str
    password_hash: str
    name: str = DEFAULT_VAULT_NAME
    logo: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class ExportedVault:
    """Envelope of an exported vault file."""
    data: str
    timestamp: str
    format: str = EXPORT_FORMAT

    @classmethod
    def create(cls, data: str) -> 'ExportedVault':
        """Wrap an encrypted blob with the current time and format tag."""
        timestamp = datetime.now(timezone.utc).isoformat(timespec='milliseconds')
        return cls(data=data, timestamp=timestamp.replace('+00:00', 'Z'))

    def to_dict(self) -> Dict[str, Any]:
        return {'data': self.data, 'timestamp': self.timestamp, 'format': self.format}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ExportedVault':
        """
        Build an envelope from parsed file content.

        Raises:
            ValueError: If data or format is missing
        """
        if not isinstance(data, dict) or not data.get('data') or not data.get('format'):
            raise ValueError("Import file must contain 'data' and 'format'")
        return cls(data=data['data'], timestamp=data.get('timestamp', ''), format=data['format'])

    @classmethod
    def from_json(cls, text: str) -> 'ExportedVault':
        return cls.from_dict(json.loads(text))
