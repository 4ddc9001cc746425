"""
This module contains functionality for reading and using configuration
of programming languages.

Compile and run commands are templates in a small closed language: the
template is split into words the way a POSIX shell would split it, and
each word may reference the variables listed in
LanguageProfile.VARIABLES using str.format syntax.  The result is an
argument vector; no shell is ever involved, so a substituted path can
never inject extra words or shell syntax.
"""
import re
import shlex
import string

from . import config


class LanguageConfigError(Exception):
    """Exception class for errors in language configuration."""
    pass


class TemplateError(LanguageConfigError):
    """A compile or run command template is malformed."""
    pass


_LEGACY_VARIABLES = {
    '$SourceFileName': '{source}',
    '$BinaryFileName': '{binary}',
}


class LanguageProfile(object):
    """
    Class representing a single language: how to compile a source file
    (optional) and how to run the result.
    """

    KEYS = ['name', 'source_ext', 'binary_ext', 'compile', 'run', 'skip_memory_rlimit']
    VARIABLES = ['source', 'file', 'binary', 'workdir', 'memlim']
    ENTRY_POINTS = {'source', 'file', 'binary', 'workdir'}
    MAIN_NAME = 'Main'

    def __init__(self, lang_id, lang_spec):
        """Construct language profile

        Args:
            lang_id (str): language identifier
            lang_spec (dict): dictionary containing the specification
                of the language.
        """
        if not isinstance(lang_id, str):
            raise TypeError('Language id must be a string, got %s' % type(lang_id))
        if not re.fullmatch('[a-z0-9][a-z0-9_+-]*', lang_id):
            raise LanguageConfigError('Invalid language ID "%s"' % lang_id)
        self.lang_id = lang_id
        self.name = None
        self.source_ext = None
        self.binary_ext = ''
        self.compile = None
        self.run = None
        self.skip_memory_rlimit = False
        self.update(lang_spec)

    @property
    def has_compile_step(self) -> bool:
        return self.compile is not None

    @property
    def source_name(self) -> str:
        return self.MAIN_NAME + self.source_ext

    @property
    def binary_name(self) -> str:
        return self.MAIN_NAME + (self.binary_ext or '')

    def update(self, values):
        """Update a language specification with new values.

        Args:
            values (dict): dictionary containing new values for some
                subset of the language properties.  A compile command
                of None or '' removes the compile step.
        """

        # Check that all provided values are known keys
        for unknown in set(values)-set(LanguageProfile.KEYS):
            raise LanguageConfigError(
                'Unknown key "%s" specified for language %s'
                % (unknown, self.lang_id))

        for (key, value) in values.items():
            if key == 'skip_memory_rlimit':
                if not isinstance(value, bool):
                    raise LanguageConfigError(
                        'Language %s: skip_memory_rlimit must be boolean but is %s.'
                        % (self.lang_id, type(value)))
            elif key in ('compile', 'binary_ext') and value is None:
                pass
            elif not isinstance(value, str):
                raise LanguageConfigError(
                    'Language %s: %s must be string but is %s.'
                    % (self.lang_id, key, type(value)))

            if key in ('compile', 'run') and value is not None:
                value = _normalize_template(value.strip()) or None
            self.__dict__[key] = value

        self.__check()

    def get_compilecmd(self, workdir, memlim=1024):
        """Argument vector compiling the source in workdir."""
        if self.compile is None:
            raise LanguageConfigError('Language %s has no compile step' % self.lang_id)
        return self.__resolve(self.compile, workdir, memlim)

    def get_runcmd(self, workdir, memlim=1024):
        """Argument vector running the program in workdir.

        Args:
            workdir (str): directory holding the source file and, for
                compiled languages, the compiled artifact.
            memlim (int): memory limit in MB (only relevant for
                languages where memory limit is passed on command line)
        """
        return self.__resolve(self.run, workdir, memlim)

    def __str__(self):
        return '%s (%s)' % (self.name, self.lang_id)

    def __check(self):
        """Check that the language specification is valid (all mandatory
        fields provided, all metavariables used in compile/run
        commands valid, and a usable entry point.
        """
        if self.name is None:
            raise LanguageConfigError(
                'Language %s has no name' % self.lang_id)
        if not self.source_ext:
            raise LanguageConfigError(
                'Language %s has no source file extension' % self.lang_id)
        if self.run is None:
            raise LanguageConfigError(
                'Language %s has no run command' % self.lang_id)

        run_vars = LanguageProfile.__variables_in_command(self.run, self.lang_id)
        variables = set(run_vars)
        if self.compile is not None:
            variables |= LanguageProfile.__variables_in_command(self.compile, self.lang_id)
        for unknown in variables - set(LanguageProfile.VARIABLES):
            raise TemplateError(
                'Unknown variable "{%s}" used for language %s'
                % (unknown, self.lang_id))

        if not run_vars & LanguageProfile.ENTRY_POINTS:
            raise TemplateError(
                'No entry point variable used in run command for language %s' % self.lang_id)
        if 'binary' in run_vars and self.compile is None:
            raise TemplateError(
                'Language %s runs {binary} but has no compile command' % self.lang_id)

    def __resolve(self, template, workdir, memlim):
        subs = {
            'source': '%s/%s' % (workdir, self.source_name),
            'binary': '%s/%s' % (workdir, self.binary_name),
            'workdir': str(workdir),
            'memlim': str(memlim),
        }
        subs['file'] = subs['source']
        try:
            return [word.format(**subs) for word in shlex.split(template)]
        except (ValueError, KeyError, IndexError) as err:
            raise TemplateError('Language %s: cannot resolve "%s": %s'
                                % (self.lang_id, template, err))

    @staticmethod
    def __variables_in_command(cmd, lang_id):
        """List all meta-variables appearing in a command template."""
        formatter = string.Formatter()
        try:
            words = shlex.split(cmd)
            if not words:
                raise TemplateError('Language %s: empty command' % lang_id)
            fields = set()
            for word in words:
                for _, field, spec, conversion in formatter.parse(word):
                    if field is None:
                        continue
                    if spec or conversion:
                        raise TemplateError(
                            'Language %s: format specifications are not allowed in "%s"'
                            % (lang_id, cmd))
                    fields.add(field)
            return fields
        except ValueError as err:
            raise TemplateError('Language %s: malformed command "%s": %s'
                                % (lang_id, cmd, err))


def _normalize_template(cmd):
    for legacy, variable in _LEGACY_VARIABLES.items():
        cmd = cmd.replace(legacy, variable)
    return cmd


class Languages(object):
    """A set of languages."""

    def __init__(self, data=None):
        """Create a set of languages from a dict.

        Args:
            data (dict): dictonary containing configuration.
                If None, resulting set of languages is empty.
                See documentation of update() method below for details.
        """
        self.languages = {}
        if data is not None:
            self.update(data)

    def __iter__(self):
        return iter(self.languages.values())

    def get(self, lang_id):
        if not isinstance(lang_id, str):
            raise LanguageConfigError(
                'Config file error: language IDs must be strings, but %s is %s.'
                % (lang_id, type(lang_id)))
        return self.languages.get(lang_id, None)

    def update(self, data):
        """Update the set with language configuration data from a dict.

        Args:
            data (dict): dictionary containing configuration.
                If this dictionary contains (possibly partial) configuration
                for a language already in the set, the configuration
                for that language will be overridden and updated.
        """
        if not isinstance(data, dict):
            raise LanguageConfigError(
                'Config file error: content must be a dictionary, but is %s.'
                % (type(data)))

        for (lang_id, lang_spec) in data.items():
            if not isinstance(lang_id, str):
                raise LanguageConfigError(
                    'Config file error: language IDs must be strings, but %s is %s.'
                    % (lang_id, type(lang_id)))

            if not isinstance(lang_spec, (dict, LanguageProfile)):
                raise LanguageConfigError(
                    'Config file error: language spec must be a dictionary, but spec of language %s is %s.'
                    % (lang_id, type(lang_spec)))

            if isinstance(lang_spec, LanguageProfile):
                self.languages[lang_id] = lang_spec
            elif lang_id not in self.languages:
                self.languages[lang_id] = LanguageProfile(lang_id, lang_spec)
            else:
                self.languages[lang_id].update(lang_spec)


def load_language_config(priority_dirs=[]):
    """Load language configuration.

    Returns:
        Languages object for the set of languages.
    """
    return Languages(config.load_config('languages.yaml', priority_dirs))
