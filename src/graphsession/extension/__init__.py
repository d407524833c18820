"""
Web framework integrations. Each extension module imports its framework
directly, so import the one you need:

    from graphsession.extension.quart_extension import QuartGraphExtension
    from graphsession.extension.sanic_extension import SanicGraphExtension
"""
