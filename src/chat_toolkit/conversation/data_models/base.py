from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """
    Base for records that cross the UI/backend boundary.

    Attributes are snake_case in Python and camelCase on the wire; both
    spellings are accepted on input. Instances are frozen, so every change is
    a 'model_copy' and earlier snapshots handed to the UI stay valid.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")
