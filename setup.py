#!/usr/bin/python

from setuptools import setup

setup(name = "python-networkstatus",
      version = "1.0",
      author = "Dennis Kaarsemaker",
      author_email = "dennis@kaarsemaker.net",
      url = "http://github.com/seveas/python-networkmanager",
      description = "Status bar block showing NetworkManager connections",
      py_modules = ["NetworkStatus"],
      install_requires = ["dbus-python", "PyGObject"],
      python_requires = ">=3.7",
      classifiers = [
        'Development Status :: 5 - Production/Stable',
        'Intended Audience :: Developers',
        'License :: OSI Approved :: zlib/libpng License',
        'Operating System :: POSIX :: Linux',
        'Programming Language :: Python',
        'Programming Language :: Python :: 3',
        'Topic :: System :: Networking',
      ]
)
