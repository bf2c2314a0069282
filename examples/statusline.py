"""
Print a status line every time NetworkManager reports a change
"""

import queue
import sys
import time

import NetworkStatus

def out(texts):
    print("%s %s" % (time.strftime('%H:%M:%S'), " | ".join(texts)))

def main():
    conf = NetworkStatus.NetworkManagerConfig.from_dict({'max_ssid_width': 12})
    wakes = queue.Queue(maxsize=8)
    try:
        block = NetworkStatus.NetworkManagerBlock(conf, NetworkStatus.Config(), wakes)
    except NetworkStatus.BlockError as e:
        sys.stderr.write("%s\n" % e)
        sys.exit(1)

    block.update()
    out([w.text for w in block.view()])
    while True:
        wakes.get()
        block.update()
        out([w.text for w in block.view()])

if __name__ == '__main__':
    main()
