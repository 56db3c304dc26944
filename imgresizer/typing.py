from typing import Any, Awaitable, Callable, MutableMapping, NewType

# Percent-decoded request path as found in the ASGI scope.
HttpPath = NewType('HttpPath', str)
QueryDict = dict[str, list[str]]

Scope = MutableMapping[str, Any]
Message = MutableMapping[str, Any]
Receive = Callable[[], Awaitable[Message]]
Send = Callable[[Message], Awaitable[None]]
ASGIApp = Callable[[Scope, Receive, Send], Awaitable[None]]
