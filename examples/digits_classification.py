# examples/digits_classification.py
"""
Digit Classification with clear_convnet

Trains a small convolutional net on the sklearn digits dataset (8x8 pixel
images, 10 classes) one sample at a time with the Adadelta trainer.

Main steps:
1. Load the sklearn digits dataset
2. Turn each image into a Volume (values scaled to [0, 1])
3. Build the net with Net.add_layer (ReLU layers are inserted automatically)
4. Train for a few epochs, tracking loss and test accuracy
5. Save the trained net, reload it and check the predictions agree
6. Plot training loss and test accuracy per epoch
"""

import os
import tempfile
import time

import numpy as np
import matplotlib.pyplot as plt
from sklearn.datasets import load_digits
from sklearn.model_selection import train_test_split

from clear_convnet import (AdadeltaTrainer, ConvLayer, FullyConnectedLayer, InputLayer, Net,
                           SoftmaxLayer, Volume)


def load_digit_volumes(test_size=0.2, seed=42):
    """
    Returns (train_volumes, train_labels), (test_volumes, test_labels).
    Each 8x8 image becomes a 1-channel Volume with pixel values 0-16 scaled to [0, 1].
    """
    digits = load_digits()
    images, labels = digits.images, digits.target
    print(f"Loaded {len(labels)} digit images of shape {images.shape[1:]}")

    train_idx, test_idx = train_test_split(np.arange(len(labels)), test_size=test_size,
                                           random_state=seed, stratify=labels)

    def volumes(indices):
        return [Volume.from_array(images[i][None, :, :] / 16.0) for i in indices]

    print(f"Split into {len(train_idx)} training and {len(test_idx)} test volumes")
    return (volumes(train_idx), labels[train_idx]), (volumes(test_idx), labels[test_idx])


def build_net(num_classes):
    net = Net()
    net.add_layer(InputLayer(8, 8, 1))
    # 3x3 kernels, pad 1 keeps 8x8; output (8, 8, 8)
    net.add_layer(ConvLayer(3, 3, 8, stride=1, pad=1, activation='relu'))
    # 2x2 kernels, stride 2; output (4, 4, 16)
    net.add_layer(ConvLayer(2, 2, 16, stride=2, activation='relu', drop_prob=0.1))
    net.add_layer(FullyConnectedLayer(num_classes))
    net.add_layer(SoftmaxLayer(num_classes))
    return net


def accuracy(net, volumes, labels):
    correct = 0
    for vol, label in zip(volumes, labels):
        net.forward(vol)
        correct += int(net.get_prediction() == label)
    return correct / len(labels)


if __name__ == "__main__":

    # --- Configuration ---
    EPOCHS = 5
    BATCH_SIZE = 20
    L2_DECAY = 0.001
    NUM_CLASSES = 10
    PRINT_EVERY_N_SAMPLES = 500

    np.random.seed(0)

    # --- 1-2. Load Data as Volumes ---
    (train_volumes, y_train), (test_volumes, y_test) = load_digit_volumes()

    # --- 3. Define the Net ---
    net = build_net(NUM_CLASSES)
    print(net.summary())

    trainer = AdadeltaTrainer(net, batch_size=BATCH_SIZE, l2_decay=L2_DECAY)

    # --- 4. Training Loop ---
    print("\n--- Starting Training ---")
    start_time_total = time.time()
    train_losses = []
    test_accuracies = []

    for epoch in range(EPOCHS):
        epoch_start_time = time.time()
        epoch_loss = 0.0
        order = np.random.permutation(len(train_volumes))

        for i, idx in enumerate(order):
            stats = trainer.train(train_volumes[idx], int(y_train[idx]))
            epoch_loss += stats['cost_loss']
            if (i + 1) % PRINT_EVERY_N_SAMPLES == 0:
                print(f"  Epoch {epoch+1}/{EPOCHS} | Sample {i+1}/{len(order)} | "
                      f"Loss: {stats['loss']:.4f} | Fwd: {stats['forward_time']*1000:.2f}ms "
                      f"Bckw: {stats['backward_time']*1000:.2f}ms")

        average_epoch_loss = epoch_loss / len(order)
        train_losses.append(average_epoch_loss)
        test_accuracy = accuracy(net, test_volumes, y_test)
        test_accuracies.append(test_accuracy)

        print(f"\nEpoch {epoch+1} completed.")
        print(f"  Average Training Loss: {average_epoch_loss:.4f}")
        print(f"  Test Accuracy: {test_accuracy * 100:.2f}%")
        print(f"  Epoch Duration: {time.time() - epoch_start_time:.2f}s")
        print("-" * 30)

    print(f"\nTotal Training Time: {time.time() - start_time_total:.2f}s")

    # --- 5. Save and Reload ---
    model_path = os.path.join(tempfile.gettempdir(), "digits_net.bin")
    net.save(model_path)
    reloaded = Net.load(model_path)
    print(f"Reloaded net accuracy: {accuracy(reloaded, test_volumes, y_test) * 100:.2f}% (saved to {model_path})")

    # --- 6. Plotting ---
    plt.figure(figsize=(12, 5))
    plt.subplot(1, 2, 1)
    plt.plot(range(1, EPOCHS + 1), train_losses, label='Training Loss', marker='o')
    plt.xlabel('Epoch')
    plt.ylabel('Loss')
    plt.legend()
    plt.title('Training Loss over Epochs')
    plt.grid(True)

    plt.subplot(1, 2, 2)
    plt.plot(range(1, EPOCHS + 1), test_accuracies, label='Test Accuracy', color='orange', marker='o')
    plt.xlabel('Epoch')
    plt.ylabel('Accuracy')
    plt.ylim(0, 1.05)
    plt.legend()
    plt.title('Test Accuracy over Epochs')
    plt.grid(True)

    plt.tight_layout()
    plt.show()
