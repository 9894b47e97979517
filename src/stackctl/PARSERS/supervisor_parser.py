"""
Parser for supervisord-style program configuration files.
"""
import configparser
import os
import shlex
from typing import Dict, Mapping, Optional

from pydantic import ValidationError

from ..errors import ConfigurationError
from ..MODELS.supervisor_config import ProgramDefinition, SupervisorConfig

PROGRAM_PREFIX = "program:"


class SupervisorConfigParser:
    """
    Reads ``[program:name]`` sections; other sections are ignored.

    ``%(ENV_NAME)s`` references expand from the environment, as supervisord does.
    """
    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        self.environ = dict(os.environ) if environ is None else dict(environ)

    def parse(self, path: str) -> SupervisorConfig:
        with open(path, 'r') as f:
            return self.parse_from_string(f.read())

    def parse_from_string(self, content: str) -> SupervisorConfig:
        # '%' in environment values would otherwise start an interpolation
        defaults = {f"ENV_{k}": v.replace('%', '%%') for k, v in self.environ.items()}
        parser = configparser.ConfigParser(interpolation=configparser.BasicInterpolation())
        # Case-sensitive option names; environment names may differ only in case
        parser.optionxform = str
        try:
            parser.read_dict({configparser.DEFAULTSECT: defaults})
            parser.read_string(content)
        except configparser.Error as e:
            raise ConfigurationError(f"Invalid supervisor configuration: {e}") from e

        programs = {}
        for section in parser.sections():
            if not section.startswith(PROGRAM_PREFIX):
                continue
            name = section[len(PROGRAM_PREFIX):].strip()
            parser.set(section, 'program_name', name)
            try:
                programs[name] = self._parse_program(name, parser[section])
            except (configparser.Error, ValidationError, ValueError) as e:
                raise ConfigurationError(f"Invalid program {name}: {e}") from e
        return SupervisorConfig(programs=programs)

    def _parse_program(self, name: str, section: configparser.SectionProxy) -> ProgramDefinition:
        if 'command' not in section:
            raise ValueError("missing 'command'")

        options = {
            'name': name,
            'command': shlex.split(section['command']),
        }
        for key in ('directory', 'user'):
            if key in section:
                options[key] = section[key]
        for key in ('startsecs', 'stopwaitsecs'):
            if key in section:
                options[key] = section.getfloat(key)
        for key in ('startretries', 'priority'):
            if key in section:
                options[key] = section.getint(key)
        if 'autostart' in section:
            options['autostart'] = section.getboolean('autostart')
        if 'autorestart' in section:
            options['autorestart'] = section['autorestart'].strip().lower()
        if 'exitcodes' in section:
            options['exitcodes'] = [int(code) for code in section['exitcodes'].split(',') if code.strip()]
        if 'environment' in section:
            options['environment'] = self._parse_environment(section['environment'])
        return ProgramDefinition(**options)

    def _parse_environment(self, text: str) -> Dict[str, str]:
        """
        Parses ``KEY="value",OTHER=value`` pairs.
        """
        lexer = shlex.shlex(text, posix=True)
        lexer.whitespace = ','
        lexer.whitespace_split = True
        environment = {}
        for token in lexer:
            key, sep, value = token.strip().partition('=')
            if not sep:
                raise ValueError(f"invalid environment entry {token!r}")
            environment[key.strip()] = value
        return environment
