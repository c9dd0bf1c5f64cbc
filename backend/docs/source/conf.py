import pathlib
import sys

sys.path.insert(0, str(pathlib.Path(__file__).resolve().parent.parent.parent))

project = 'Smoke Map API'
copyright = '2025, Smoke Map contributors'
author = 'Smoke Map contributors'
release = '0.1.0'

exclude_patterns = ['tests']

extensions = [
    'sphinx.ext.autodoc',
    'sphinx.ext.napoleon',
    'sphinx.ext.autosummary',
    'sphinx.ext.viewcode',
    'sphinx_autodoc_typehints',
    'myst_parser',
]

autosummary_generate = True

napoleon_google_docstring = True
napoleon_numpy_docstring = False

html_theme = 'sphinx_rtd_theme'

autodoc_default_options = {
    'members': True,
    'show-inheritance': True,
}

source_suffix = {
    '.rst': 'restructuredtext',
    '.md': 'markdown',
}
