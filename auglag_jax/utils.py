from typing import Any, Callable, TypeVar

import jax

T = TypeVar("T")


def args_closure(
    fn: Callable[[jax.Array, T], Any], args: T
) -> Callable[[jax.Array], Any]:
    def wrapped(x: jax.Array) -> Any:
        return fn(x, args)

    return wrapped


def hvp_closure(
    fn: Callable[[jax.Array, jax.Array, T], jax.Array], x: jax.Array, args: T
) -> Callable[[jax.Array], jax.Array]:
    def wrapped(v: jax.Array) -> jax.Array:
        return fn(x, v, args)

    return wrapped
