import os
import subprocess
import sys
from pos_server import app, get_pos_state


def start_receipt_agent():
    """Spawn receipt_agent.py next to the server when RECEIPT_AGENT_AUTO_START=1."""
    if os.getenv('RECEIPT_AGENT_AUTO_START', '0') != '1':
        return None
    # the reloader's child process must not start a second agent
    if os.environ.get('WERKZEUG_RUN_MAIN') == 'true':
        return None
    script_path = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'receipt_agent.py')
    if not os.path.exists(script_path):
        app.logger.warning('Receipt agent auto-start requested but %s is missing', script_path)
        return None
    env = os.environ.copy()
    env.setdefault('RECEIPT_AGENT_HOST', '127.0.0.1')
    env.setdefault('RECEIPT_AGENT_PORT', '5001')
    app.logger.info('Starting receipt agent on %s:%s', env['RECEIPT_AGENT_HOST'], env['RECEIPT_AGENT_PORT'])
    return subprocess.Popen([sys.executable, script_path], env=env)


def main():
    debug = os.getenv('FLASK_DEBUG', '0') == '1'
    port = int(os.getenv('PORT', '5000'))
    host = os.getenv('HOST', '0.0.0.0')
    state = get_pos_state()
    app.logger.info('POS server using %s', state.db_path)
    agent_proc = start_receipt_agent()
    try:
        app.run(host=host, port=port, debug=debug)
    finally:
        if agent_proc:
            agent_proc.terminate()


if __name__ == '__main__':
    main()
