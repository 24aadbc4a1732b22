import os
import shutil

# Get the test directory and project directory dynamically
script_dir = os.path.dirname(os.path.abspath(__file__))
project_dir = os.path.dirname(script_dir)

config.txcfg_dir = project_dir

# Find txcfg dynamically
if shutil.which('txcfg'):
    config.txcfg = shutil.which('txcfg')
elif os.path.exists(os.path.join(project_dir, 'MyEnv', 'bin', 'txcfg')):
    config.txcfg = os.path.join(project_dir, 'MyEnv', 'bin', 'txcfg')
else:
    config.txcfg = None

# Load the main config
lit_config.load_config(config, os.path.join(script_dir, "lit.cfg.py"))
