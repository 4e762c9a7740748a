"""
interfaces/ — Terminal surface

    pincer.interfaces.cli.main   argparse entry point (`pincer` console script)
"""
