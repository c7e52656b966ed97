from outpost.transport.base import Transport, render
from outpost.transport.command import Command
from outpost.transport.content import Content

__all__ = ["Command", "Content", "Transport", "render"]
