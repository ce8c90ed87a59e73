"""Shared base for domain records."""

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Domain record serialized with camelCase field names.

    The UI pattern-matches on these names, so responses are always dumped
    by alias. Construction accepts either form.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)
