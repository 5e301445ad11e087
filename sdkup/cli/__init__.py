"""Command line interface for sdkup"""
