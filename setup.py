#+
# Setuptools script to install Satie. Make sure setuptools
# <https://setuptools.pypa.io/en/latest/index.html> is installed.
# Invoke from the command line in this directory as follows:
#
#     python3 setup.py build
#     sudo python3 setup.py install
#
# or install for development, with the test requirements, via
#
#     python3 -m pip install -e .[test]
#-

import sys
import setuptools
from setuptools.command.build_py import \
    build_py as std_build_py

class my_build_py(std_build_py) :
    "customization of build to perform additional validation."

    def run(self) :
        if sys.version_info < (3, 7) :
            sys.stderr.write("This module requires Python 3.7 or later.\n")
            sys.exit(-1)
        #end if
        super().run()
    #end run

#end my_build_py

setuptools.setup \
  (
    name = "Satie",
    version = "0.1",
    description = "D-Bus-style proxy and service objects generated from interface descriptions, for Python 3.7 or later",
    long_description =
        "Generates client proxies with blocking and callback-completed method calls,"
        " cached properties and signal observers, and dispatches incoming calls on"
        " service objects to application handlers, over an in-process asyncio bus.",
    license = "LGPL v2.1+",
    python_requires = ">=3.7",
    py_modules = ["satie", "parade"],
    install_requires = ["dbus-next"],
    extras_require =
        {
            "test" : ["pytest"],
        },
    cmdclass =
        {
            "build_py" : my_build_py,
        },
  )
