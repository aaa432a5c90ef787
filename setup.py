from setuptools import setup

__version__ = "1.2.0"
__author__ = "Maxime Lamothe-Brassard ( Refraction Point, Inc )"
__author_email__ = "maxime@refractionpoint.com"
__license__ = "Apache v2"
__copyright__ = "Copyright (c) 2020 Refraction Point, Inc"

setup( name = 'loopback-oauth',
       version = __version__,
       description = 'Loopback listener completing desktop OAuth redirect flows.',
       author = __author__,
       author_email = __author_email__,
       license = __license__,
       packages = [ 'loopback_oauth' ],
       zip_safe = True,
       python_requires = '>=3.8',
       install_requires = [ 'requests', 'pyyaml', 'rich' ],
       extras_require = {
           'test': [ 'pytest' ],
       },
       long_description = 'Single-use HTTP listener on 127.0.0.1 that captures the full OAuth redirect URL, fragment included, for desktop applications.',
       entry_points = {
           'console_scripts': [
               'loopback-oauth=loopback_oauth.__main__:main',
           ],
       },
)
