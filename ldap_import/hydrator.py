"""
Attribute hydration from directory objects onto local records.

The hydrator applies a declarative field mapping (local column -> directory
attribute, template or callable) to a LocalRecord. It never persists the
record; the importer does that after hydration.
"""

import logging
from string import Formatter
from typing import Dict, List, Any, Optional, Callable

from ldap_import.directory import DirectoryObject
from ldap_import.exceptions import HydrationError

logger = logging.getLogger(__name__)

_MISSING = object()


class FieldMapping:
    """
    Mapping of one local column to a value derived from a directory object.

    Exactly one of attribute, template or handler must be given.
    """

    def __init__(self, name: str, attribute: Optional[str] = None, template: Optional[str] = None,
                 handler: Optional[Callable[[DirectoryObject], Any]] = None,
                 required: bool = False, all_values: bool = False, default: Any = None):
        sources = [s for s in (attribute, template, handler) if s is not None]
        if len(sources) != 1:
            raise ValueError(f"Field mapping '{name}' needs exactly one of attribute, template or handler")

        self.name = name
        self.attribute = attribute
        self.template = template
        self.handler = handler
        self.required = required
        self.all_values = all_values
        self.default = default

        self._template_fields = []
        if template is not None:
            self._template_fields = [field for _, field, _, _ in Formatter().parse(template) if field]

    @classmethod
    def from_config(cls, name: str, spec: Any) -> 'FieldMapping':
        """
        Build a mapping from a configuration value.

        Args:
            name: Local column name
            spec: Attribute name string, callable, or dict with keys
                attribute/template, required, all, default

        Raises:
            ValueError: If the mapping value is not understood
        """
        if isinstance(spec, str):
            return cls(name, attribute=spec)
        if callable(spec):
            return cls(name, handler=spec)
        if isinstance(spec, dict):
            return cls(
                name,
                attribute=spec.get('attribute'),
                template=spec.get('template'),
                handler=spec.get('handler'),
                required=bool(spec.get('required', False)),
                all_values=bool(spec.get('all', False)),
                default=spec.get('default'),
            )
        raise ValueError(f"Unsupported mapping for field '{name}': {spec!r}")

    def resolve(self, obj: DirectoryObject) -> Any:
        """Derive the value from the directory object, or _MISSING if absent."""
        if self.handler is not None:
            value = self.handler(obj)
            return _MISSING if value is None else value

        if self.template is not None:
            values = {}
            for field in self._template_fields:
                value = obj.get_first_attribute(field)
                if value is None:
                    return _MISSING
                values[field] = value
            return self.template.format(**values)

        if not obj.has_attribute(self.attribute):
            return _MISSING
        if self.all_values:
            return obj.get_attribute(self.attribute)
        return obj.get_first_attribute(self.attribute)

    def __repr__(self):
        source = self.attribute or self.template or getattr(self.handler, '__name__', 'handler')
        return f"FieldMapping({self.name!r} <- {source!r})"


def build_mappings(config: Dict[str, Any]) -> List[FieldMapping]:
    """Build field mappings from the sync_attributes configuration, keeping definition order."""
    return [FieldMapping.from_config(name, spec) for name, spec in config.items()]


class AttributeHydrator:
    """Copies GUID, domain and mapped attributes from a directory object to a local record."""

    def __init__(self, mappings: List[FieldMapping], domain: Optional[str] = None):
        self.mappings = list(mappings)
        self.domain = domain

    @property
    def columns(self) -> List[str]:
        return [mapping.name for mapping in self.mappings]

    def hydrate(self, obj: DirectoryObject, record, override_data: Optional[Dict[str, Any]] = None):
        """
        Hydrate the record in place.

        Args:
            obj: Directory object to read from
            record: LocalRecord to update (not persisted here)
            override_data: Caller-supplied values taking precedence over the directory

        Raises:
            HydrationError: If a required field has no value
        """
        override_data = override_data or {}

        # The GUID column is only ever written on records that have none yet.
        if record.guid is None:
            record.guid = obj.converted_guid

        if self.domain is not None:
            record.domain = self.domain

        for mapping in self.mappings:
            if mapping.name in override_data:
                record.attributes[mapping.name] = override_data[mapping.name]
                continue

            try:
                value = mapping.resolve(obj)
            except HydrationError:
                raise
            except Exception as e:
                raise HydrationError(mapping.name, obj.rdn, f"Field '{mapping.name}' failed for [{obj.rdn}]: {e}")

            if value is _MISSING:
                if mapping.default is not None:
                    value = mapping.default
                elif mapping.required:
                    raise HydrationError(mapping.name, obj.rdn)
                else:
                    logger.debug(f"Skipping field '{mapping.name}' for [{obj.rdn}]: attribute absent")
                    continue

            record.attributes[mapping.name] = value
