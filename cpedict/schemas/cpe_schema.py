import json
from datetime import timezone
from pathlib import Path
from typing import List, Optional, Union

from marshmallow import EXCLUDE, Schema, ValidationError, fields, post_load, validate

from cpedict.models.types import CategorizedCpe, FetchMeta, FetchType


class CategorizedCpeSchema(Schema):
    """
    Schema de uma entrada CPE categorizada (formato de troca em JSON).
    """
    class Meta:
        unknown = EXCLUDE

    fetch_type = fields.Enum(FetchType, by_value=True, load_default=FetchType.NVD)
    vendor = fields.Str(required=True, validate=validate.Length(min=1, max=255))
    product = fields.Str(required=True, validate=validate.Length(min=1, max=255))
    cpe_uri = fields.Str(required=True, validate=validate.Regexp(r'^cpe:/[aho]?'))
    cpe_fs = fields.Str(required=True, validate=validate.Regexp(r'^cpe:2\.3:'))
    deprecated = fields.Bool(load_default=False)

    @post_load
    def make_cpe(self, data, **kwargs) -> CategorizedCpe:
        return CategorizedCpe(**data)


class FetchMetaSchema(Schema):
    """
    Schema para serialização do FetchMeta.
    """
    revision = fields.Str()
    schema_version = fields.Int()
    last_fetched_at = fields.AwareDateTime(default_timezone=timezone.utc)

    @post_load
    def make_fetch_meta(self, data, **kwargs) -> FetchMeta:
        return FetchMeta(**data)


def load_cpes_from_file(path: Union[str, Path], fetch_type: Optional[FetchType] = None) -> List[CategorizedCpe]:
    """
    Carrega entradas CPE de um arquivo JSON.

    Aceita uma lista de objetos ou um objeto {"cpes": [...]}. Entradas sem
    fetch_type recebem `fetch_type`, quando informado.

    Raises:
        ValidationError: arquivo não é JSON UTF-8 válido ou entrada inválida
            (com o índice da entrada)
    """
    try:
        with open(path, 'r', encoding='utf-8') as f:
            payload = json.load(f)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ValidationError(f"Invalid JSON in {path}: {e}") from e

    if isinstance(payload, dict):
        payload = payload.get('cpes', [])
    if not isinstance(payload, list):
        raise ValidationError("Expected a list of CPE entries or an object with a 'cpes' list")

    if fetch_type is not None:
        payload = [
            dict({'fetch_type': FetchType(fetch_type).value}, **entry) if isinstance(entry, dict) else entry
            for entry in payload
        ]

    return CategorizedCpeSchema(many=True).load(payload)
