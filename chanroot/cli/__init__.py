"""chanroot command line interface"""
