from django_fsm import FSMField


class CanonicalStateField(FSMField):
    """FSMField that reads retired state values as their current name.

    Older rows may still carry a state that was renamed. The mapping is
    applied whenever a value comes out of the database or is cleaned, so
    the rest of the code only ever sees canonical states.
    """

    def __init__(self, *args, legacy_states=None, **kwargs):
        self.legacy_states = dict(legacy_states or {})
        super().__init__(*args, **kwargs)

    def deconstruct(self):
        name, path, args, kwargs = super().deconstruct()
        if self.legacy_states:
            kwargs["legacy_states"] = self.legacy_states
        return name, path, args, kwargs

    def canonical(self, value):
        return self.legacy_states.get(value, value)

    def from_db_value(self, value, expression, connection):
        return self.canonical(value)

    def to_python(self, value):
        return self.canonical(super().to_python(value))
