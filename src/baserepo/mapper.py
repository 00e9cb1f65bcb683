from typing import Any, Callable

from baserepo.exceptions import MapperError


class ModelMapper:
    """
    Builds entities from rows by calling a factory on the model class.

    ``ModelMapper(Post)`` calls ``Post.from_row(row)``; pass ``method`` to use
    another factory name.
    """

    def __init__(self, model: Any, method: str = "from_row"):
        self.model = model
        self.method = method

    def _factory(self) -> Callable[[dict[str, Any]], Any]:
        factory = getattr(self.model, self.method, None)
        if not callable(factory):
            name = getattr(self.model, "__name__", repr(self.model))
            raise MapperError(f"Mapper {name}.{self.method} not callable")
        return factory

    def __call__(self, row: dict[str, Any]) -> Any:
        return self._factory()(row)
