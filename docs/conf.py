# Configuration file for the Sphinx documentation builder.
#
# For the full list of built-in configuration values, see the documentation:
# https://www.sphinx-doc.org/en/master/usage/configuration.html

import os
import sys
sys.path.insert(0, os.path.abspath('..'))

from konverge import __version__  # noqa: E402

# -- Project information -----------------------------------------------------

project = 'Konverge'
copyright = '2024, Konverge developers'
author = 'Konverge developers'
release = __version__
version = __version__

# -- General configuration ---------------------------------------------------

extensions = [
    'sphinx.ext.autodoc',
    'sphinx.ext.napoleon',
    'sphinx.ext.viewcode',
    'sphinx.ext.intersphinx',
]

templates_path = ['_templates']
exclude_patterns = ['_build', 'Thumbs.db', '.DS_Store']

# -- Options for HTML output -------------------------------------------------

html_theme = 'sphinx_rtd_theme'
html_static_path = []

# -- Extension configuration -------------------------------------------------

# Google-style docstrings only
napoleon_google_docstring = True
napoleon_numpy_docstring = False
napoleon_include_init_with_doc = False
napoleon_use_param = True
napoleon_use_rtype = True
napoleon_attr_annotations = True

autodoc_default_options = {
    'members': True,
    'member-order': 'bysource',
    'undoc-members': False,
    'exclude-members': '__weakref__,__dataclass_fields__,__dataclass_params__,__match_args__',
}


def skip_dataclass_fields(app, what, name, obj, skip, options):
    """Skip record dataclass fields documented again at module level."""
    if what == "attribute" and 'konverge.core.schema' in str(getattr(obj, '__module__', '')):
        return True
    return skip


def setup(app):
    app.connect('autodoc-skip-member', skip_dataclass_fields)


autodoc_typehints = 'description'
autodoc_typehints_description_target = 'documented'

intersphinx_mapping = {
    'python': ('https://docs.python.org/3', None),
}
