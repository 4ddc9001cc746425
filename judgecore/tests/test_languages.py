# -*- coding: utf-8 -*-
from unittest import TestCase
import pytest

from judgecore import languages


class LanguageProfile_test(TestCase):
    @staticmethod
    def __language_dict():
        return {'name': 'A Language',
                'source_ext': '.foo',
                'binary_ext': '.bin',
                'compile': 'foocc -o {binary} {source}',
                'run': '{binary} --mem {memlim}'
                }

    def test_create(self):
        lang = languages.LanguageProfile('langid', self.__language_dict())
        assert lang.has_compile_step
        assert lang.source_name == 'Main.foo'
        assert lang.binary_name == 'Main.bin'

    def test_update(self):
        lang = languages.LanguageProfile('langid', self.__language_dict())

        lang.update({'name': 'New name'})
        assert lang.name == 'New name'

        lang.update({'compile': 'newcompile {source}'})
        assert lang.compile == 'newcompile {source}'

        with pytest.raises(languages.LanguageConfigError):
            # no entry point
            lang.update({'run': 'newrun'})
        lang.update({'run': 'newrun {workdir}'})
        assert lang.run == 'newrun {workdir}'

    def test_remove_compile_step(self):
        vals = self.__language_dict()
        vals['run'] = 'interp {source}'
        lang = languages.LanguageProfile('langid', vals)
        lang.update({'compile': None})
        assert not lang.has_compile_step
        lang.update({'compile': 'cc {source}'})
        lang.update({'compile': ''})
        assert lang.compile is None

    def test_invalid_id(self):
        vals = self.__language_dict()
        with pytest.raises(TypeError):
            languages.LanguageProfile(None, vals)
        with pytest.raises(TypeError):
            languages.LanguageProfile(42, vals)
        with pytest.raises(languages.LanguageConfigError):
            languages.LanguageProfile('åäö', vals)
        with pytest.raises(languages.LanguageConfigError):
            languages.LanguageProfile('_java_', vals)
        with pytest.raises(languages.LanguageConfigError):
            languages.LanguageProfile('Capital', vals)

    def test_numeric_id(self):
        languages.LanguageProfile('17', self.__language_dict())

    def test_missing_name(self):
        vals = self.__language_dict()
        del vals['name']
        with pytest.raises(languages.LanguageConfigError):
            languages.LanguageProfile('id', vals)

    def test_unknown_key(self):
        vals = self.__language_dict()
        vals['priority'] = 3
        with pytest.raises(languages.LanguageConfigError):
            languages.LanguageProfile('id', vals)

    def test_missing_run(self):
        vals = self.__language_dict()
        del vals['run']
        with pytest.raises(languages.LanguageConfigError):
            languages.LanguageProfile('id', vals)

    def test_invalid_run(self):
        vals = self.__language_dict()
        vals['run'] = ['python3', '{source}']
        with pytest.raises(languages.LanguageConfigError):
            languages.LanguageProfile('id', vals)
        vals['run'] = 'echo {nonexistent}'
        with pytest.raises(languages.TemplateError):
            languages.LanguageProfile('id', vals)
        vals['run'] = 'echo "{source}'
        with pytest.raises(languages.TemplateError):
            languages.LanguageProfile('id', vals)
        vals['run'] = 'echo {source!r}'
        with pytest.raises(languages.TemplateError):
            languages.LanguageProfile('id', vals)
        vals['run'] = 'echo {source'
        with pytest.raises(languages.TemplateError):
            languages.LanguageProfile('id', vals)

    def test_binary_needs_compile(self):
        vals = self.__language_dict()
        del vals['compile']
        with pytest.raises(languages.TemplateError):
            languages.LanguageProfile('id', vals)

    def test_legacy_variables(self):
        lang = languages.LanguageProfile('cpp', {
            'name': 'C++',
            'source_ext': '.cpp',
            'binary_ext': '.out',
            'compile': 'g++ -o $BinaryFileName $SourceFileName',
            'run': '$BinaryFileName',
        })
        assert lang.get_compilecmd('/w') == ['g++', '-o', '/w/Main.out', '/w/Main.cpp']
        assert lang.get_runcmd('/w') == ['/w/Main.out']

    def test_resolve_is_argument_vector(self):
        lang = languages.LanguageProfile('py', {
            'name': 'Python',
            'source_ext': '.py',
            'run': 'python3 {file}',
        })
        argv = lang.get_runcmd('/tmp/dir with space; rm -rf x')
        assert argv == ['python3', '/tmp/dir with space; rm -rf x/Main.py']

    def test_memlim(self):
        lang = languages.LanguageProfile('java', {
            'name': 'Java',
            'source_ext': '.java',
            'compile': 'javac -d {workdir} {source}',
            'run': 'java -Xmx{memlim}m -cp {workdir} Main',
            'skip_memory_rlimit': True,
        })
        assert lang.get_runcmd('/w', memlim=256) == ['java', '-Xmx256m', '-cp', '/w', 'Main']
        assert lang.skip_memory_rlimit

    def test_compilecmd_without_compile_step(self):
        lang = languages.LanguageProfile('py', {
            'name': 'Python',
            'source_ext': '.py',
            'run': 'python3 {source}',
        })
        with pytest.raises(languages.LanguageConfigError):
            lang.get_compilecmd('/w')


class Languages_test(TestCase):
    def test_empty_languages(self):
        lang = languages.Languages()
        assert lang.languages == {}
        assert lang.get('cpp') is None

    def test_invalid_format(self):
        lang = languages.Languages()
        # Dict of strings instead of dict of dict
        conf1 = {'c': 'C'}
        # List instead of dict
        conf2 = [{'name': "C",
                  'source_ext': ".c",
                  'compile': "/usr/bin/gcc -O2 -o {binary} {source} -lm",
                  'run': "{binary}"}]
        conf3 = None
        with pytest.raises(languages.LanguageConfigError):
            lang.update(conf1)
        with pytest.raises(languages.LanguageConfigError):
            lang.update(conf2)
        with pytest.raises(languages.LanguageConfigError):
            lang.update(conf3)

    def test_partial_update(self):
        langs = languages.Languages({'c': {'name': 'C',
                                           'source_ext': '.c',
                                           'binary_ext': '.out',
                                           'compile': 'gcc -o {binary} {source}',
                                           'run': '{binary}'}})
        langs.update({'c': {'compile': 'clang -o {binary} {source}'}})
        assert langs.get('c').compile == 'clang -o {binary} {source}'
        assert langs.get('c').name == 'C'

    def test_get_non_string(self):
        with pytest.raises(languages.LanguageConfigError):
            languages.Languages().get(3)


def test_default_language_config():
    langs = languages.load_language_config()
    python = langs.get('python3')
    assert python is not None
    assert not python.has_compile_step
    assert langs.get('cpp').has_compile_step
    assert {lang.lang_id for lang in langs} >= {'c', 'cpp', 'java', 'python3'}
